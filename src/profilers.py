#!/usr/bin/env python3
import logging
import os
from enum import Enum

logger = logging.getLogger(__name__)

PERF_EVENT_PARANOID = "/proc/sys/kernel/perf_event_paranoid"
FLAMEGRAPH_OUTPUT = "conflux.svg"


class Profiler(Enum):
    NONE = "none"
    FLAMEGRAPH = "flamegraph"
    HEAPTRACK = "heaptrack"


class SetupCommand:
    """A one-time host setup step, optionally fed through stdin"""
    def __init__(self, args, stdin=None):
        self.args = list(args)
        self.stdin = stdin

    def __repr__(self):
        return f"SetupCommand({' '.join(self.args)!r})"


def parse_profiler(value):
    """
    Map a command line value onto a Profiler

    Args:
        value: "flamegraph", "heaptrack", or anything else (including None)

    Returns:
        The matching Profiler; Profiler.NONE for missing or unknown values
    """
    if isinstance(value, Profiler):
        return value
    if value is None:
        return Profiler.NONE

    name = value.strip().lower()
    if not name or name == Profiler.NONE.value:
        return Profiler.NONE

    for profiler in (Profiler.FLAMEGRAPH, Profiler.HEAPTRACK):
        if name == profiler.value:
            return profiler

    logger.warning("Unknown profiler %r, starting nodes without a profiler", value)
    return Profiler.NONE


def _apt_install(package):
    return SetupCommand(["sudo", "apt", "install", "-y", package])


def setup_commands(profiler, kernel_release):
    """Host setup to run once before any node starts"""
    if profiler == Profiler.FLAMEGRAPH:
        # perf needs the tools matching the running kernel
        return [
            _apt_install("linux-tools-common"),
            _apt_install(f"linux-tools-{kernel_release}"),
            SetupCommand(["sudo", "tee", PERF_EVENT_PARANOID], stdin="-1\n"),
        ]
    if profiler == Profiler.HEAPTRACK:
        return [_apt_install("heaptrack")]
    return []


def wrap_command(profiler, node_command, workdir):
    """Prefix a node command with the profiler invocation, if any"""
    if profiler == Profiler.FLAMEGRAPH:
        svg = os.path.join(workdir, FLAMEGRAPH_OUTPUT)
        return ["flamegraph", "-o", svg] + list(node_command)
    if profiler == Profiler.HEAPTRACK:
        return ["heaptrack"] + list(node_command)
    return list(node_command)
