#!/usr/bin/env python3
"""
Start a batch of local conflux nodes for tests and benchmarks.

Example:
    conflux-launch /data/nodes 30000 3
    conflux-launch /data/nodes 30000 3 50 flamegraph

Each node i runs from <root_dir>/node<i> with <root_dir>/node<i>/conflux.conf,
advertises <host ip>:<p2p_port_start + i> and is placed in the
net_cls:limit<i+1> control group. Nodes are started in the background and
left running; this tool does not monitor or stop them.
"""
import argparse
import json
import logging
import os
import platform
import socket
import subprocess
import sys

from profilers import FLAMEGRAPH_OUTPUT, parse_profiler, setup_commands, wrap_command

logger = logging.getLogger(__name__)

DEFAULT_BANDWIDTH = "20"
DEFAULT_BINARY = "~/conflux"
DEFAULT_THROTTLE_SCRIPT = "./throttle_bitcoin_bandwidth.sh"
DEFAULT_CGROUP_CONTROLLER = "net_cls"

CONFIG_FILE = "conflux.conf"
NOHUP_FILE = "nohup.out"
MAX_PORT = 65535


def local_ip():
    """Address of this host, as `hostname --ip-address` reports it"""
    return socket.gethostbyname(socket.gethostname())


def _resolve_binary(binary):
    """Absolute path for a binary given as a path; bare names stay on PATH"""
    binary = os.path.expanduser(binary)
    if os.sep in binary:
        return os.path.abspath(binary)
    return binary


class LaunchConfig:
    """Parameters for one launch of the node batch"""
    def __init__(self, root_dir, p2p_port_start, num_nodes,
                 bandwidth=DEFAULT_BANDWIDTH, profiler=None, host_ip=None,
                 binary=DEFAULT_BINARY, throttle_script=DEFAULT_THROTTLE_SCRIPT,
                 cgroup_controller=DEFAULT_CGROUP_CONTROLLER):
        # nodes run from their own workdir, so paths handed to them must be absolute
        self.root_dir = os.path.abspath(os.path.expanduser(root_dir))
        self.p2p_port_start = int(p2p_port_start)
        self.num_nodes = int(num_nodes)
        self.bandwidth = str(bandwidth).strip()
        self.profiler = parse_profiler(profiler)
        self.host_ip = host_ip or local_ip()
        self.binary = _resolve_binary(binary)
        self.throttle_script = throttle_script
        self.cgroup_controller = cgroup_controller

        if not 1 <= self.p2p_port_start <= MAX_PORT:
            raise ValueError(f"p2p_port_start must be in 1..{MAX_PORT}, got {self.p2p_port_start}")
        if self.num_nodes < 0:
            raise ValueError(f"num_nodes must not be negative, got {self.num_nodes}")
        if self.p2p_port_start + self.num_nodes - 1 > MAX_PORT:
            raise ValueError(
                f"{self.num_nodes} nodes starting at port {self.p2p_port_start} "
                f"would go past port {MAX_PORT}"
            )
        try:
            positive = float(self.bandwidth) > 0
        except ValueError:
            positive = False
        if not positive:
            raise ValueError(f"bandwidth must be a positive number, got {self.bandwidth!r}")

    def to_dict(self):
        return {
            "root_dir": self.root_dir,
            "p2p_port_start": self.p2p_port_start,
            "num_nodes": self.num_nodes,
            "bandwidth": self.bandwidth,
            "profiler": self.profiler.value,
            "host_ip": self.host_ip,
            "binary": self.binary,
        }


class NodeSpec:
    """Paths and addresses derived for a single node index"""
    def __init__(self, config, index):
        self.index = index
        self.workdir = os.path.join(config.root_dir, f"node{index}")
        self.config_path = os.path.join(self.workdir, CONFIG_FILE)
        self.flamegraph_output = os.path.join(self.workdir, FLAMEGRAPH_OUTPUT)
        self.port = config.p2p_port_start + index
        self.public_address = f"{config.host_ip}:{self.port}"
        # control groups are numbered from 1
        self.cgroup = f"limit{index + 1}"

    def to_dict(self):
        return {
            "index": self.index,
            "workdir": self.workdir,
            "config": self.config_path,
            "flamegraph_output": self.flamegraph_output,
            "public_address": self.public_address,
            "cgroup": self.cgroup,
        }


class LaunchedNode:
    """Outcome of a spawn attempt; pid is None when nothing was started"""
    def __init__(self, spec, command, pid=None, error=None):
        self.spec = spec
        self.command = command
        self.pid = pid
        self.error = error

    @property
    def started(self):
        return self.pid is not None

    def to_dict(self):
        data = self.spec.to_dict()
        data["command"] = self.command
        data["pid"] = self.pid
        if self.error:
            data["error"] = self.error
        return data


def derive_nodes(config):
    return [NodeSpec(config, i) for i in range(config.num_nodes)]


def build_node_command(config, spec):
    """Full argv for one node: cgexec, optional profiler, then the binary"""
    node_command = [
        config.binary,
        "--config", spec.config_path,
        "--public-address", spec.public_address,
    ]
    cgroup = f"{config.cgroup_controller}:{spec.cgroup}"
    return ["cgexec", "-g", cgroup] + wrap_command(config.profiler, node_command, spec.workdir)


class Launcher:
    """
    Runs the one-time host setup, the bandwidth throttle and the node spawns.

    The subprocess functions are injectable so that callers can observe
    the commands without executing them.
    """
    def __init__(self, config, run=subprocess.run, popen=subprocess.Popen,
                 kernel_release=None, dry_run=False):
        self.config = config
        self.run = run
        self.popen = popen
        self.kernel_release = kernel_release or platform.release()
        self.dry_run = dry_run

    def _node_env(self):
        env = dict(os.environ)
        env["RUST_BACKTRACE"] = "full"
        return env

    def _log_command(self, prefix, args):
        level = logging.INFO if self.dry_run else logging.DEBUG
        logger.log(level, "%s: %s", prefix, " ".join(args))

    def _run_step(self, args, stdin=None):
        self._log_command("Running", args)
        if self.dry_run:
            return
        try:
            result = self.run(args, input=stdin, text=True, check=False)
        except OSError as e:
            logger.warning("Could not run %s: %s", args[0], e)
            return
        if result.returncode != 0:
            logger.warning("%s exited with status %s", " ".join(args), result.returncode)

    def prepare(self):
        """Install and configure the selected profiler on this host"""
        commands = setup_commands(self.config.profiler, self.kernel_release)
        if commands:
            logger.info("Preparing host for %s", self.config.profiler.value)
        for command in commands:
            self._run_step(command.args, stdin=command.stdin)

    def throttle(self):
        """Limit bandwidth for all node control groups at once"""
        logger.info("Limiting bandwidth to %s for %d nodes", self.config.bandwidth, self.config.num_nodes)
        self._run_step([self.config.throttle_script, str(self.config.bandwidth), str(self.config.num_nodes)])

    def spawn(self, spec):
        """Start one node in the background without waiting for it"""
        command = build_node_command(self.config, spec)
        logger.info("start node %d: %s ...", spec.index, spec.workdir)
        self._log_command("Command", command)

        if self.dry_run:
            return LaunchedNode(spec, command)

        if not os.path.isdir(spec.workdir):
            logger.error("Working directory %s does not exist, skipping node %d", spec.workdir, spec.index)
            return LaunchedNode(spec, command, error="missing working directory")

        try:
            with open(os.path.join(spec.workdir, NOHUP_FILE), "ab") as out:
                process = self.popen(
                    command,
                    cwd=spec.workdir,
                    env=self._node_env(),
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as e:
            logger.error("Failed to start node %d: %s", spec.index, e)
            return LaunchedNode(spec, command, error=str(e))

        logger.debug("Node %d started with PID %s", spec.index, process.pid)
        return LaunchedNode(spec, command, pid=process.pid)

    def launch(self):
        """Prepare the host, throttle, then start every node in index order"""
        self.prepare()
        self.throttle()
        return [self.spawn(spec) for spec in derive_nodes(self.config)]


def write_manifest(path, config, launched):
    """Record what was started, for scripts that drive the nodes afterwards"""
    manifest = {
        "launch": config.to_dict(),
        "nodes": [node.to_dict() for node in launched],
    }
    with open(path, "w") as f:
        json.dump(manifest, f, indent=2)
    return manifest


def build_parser():
    parser = argparse.ArgumentParser(description="Start local conflux nodes in the background")
    parser.add_argument("root_dir", help="Directory holding node0, node1, ... working directories")
    parser.add_argument("p2p_port_start", type=int, help="P2P port of node0; node i uses this plus i")
    parser.add_argument("num_nodes", type=int, help="Number of nodes to start")
    parser.add_argument("bandwidth", nargs="?", default=DEFAULT_BANDWIDTH,
                        help=f"Bandwidth limit passed to the throttle script (default {DEFAULT_BANDWIDTH})")
    parser.add_argument("profiler", nargs="?", default=None,
                        help="Wrap nodes in a profiler: flamegraph or heaptrack")
    parser.add_argument("--binary", default=DEFAULT_BINARY, help="Node binary")
    parser.add_argument("--throttle-script", default=DEFAULT_THROTTLE_SCRIPT,
                        help="Script called as <script> <bandwidth> <num_nodes>")
    parser.add_argument("--ip", dest="host_ip", default=None,
                        help="Public IP to advertise (default: this host's address)")
    parser.add_argument("--cgroup-controller", default=DEFAULT_CGROUP_CONTROLLER,
                        help="cgexec controller for the per-node limit groups")
    parser.add_argument("--manifest", default=None, help="Write a JSON record of the started nodes here")
    parser.add_argument("--dry-run", action="store_true", help="Log the commands without running them")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = LaunchConfig(
            args.root_dir, args.p2p_port_start, args.num_nodes,
            bandwidth=args.bandwidth,
            profiler=args.profiler,
            host_ip=args.host_ip,
            binary=args.binary,
            throttle_script=args.throttle_script,
            cgroup_controller=args.cgroup_controller,
        )
    except (ValueError, OSError) as e:
        # OSError comes from resolving the host address
        parser.error(str(e))

    logger.info("root_dir = %s", config.root_dir)
    logger.info("p2p_port_start = %d", config.p2p_port_start)
    logger.info("num_conflux = %d", config.num_nodes)

    launched = Launcher(config, dry_run=args.dry_run).launch()

    if args.manifest:
        write_manifest(args.manifest, config, launched)
        logger.info("Wrote manifest to %s", args.manifest)

    started = sum(1 for node in launched if node.started)
    logger.info("Issued %d of %d node starts", started, len(launched))
    return 0


if __name__ == "__main__":
    sys.exit(main())
