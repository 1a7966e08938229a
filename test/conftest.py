import os
import subprocess

import pytest

from launcher import LaunchConfig, Launcher

HOST_IP = "10.0.0.5"


class FakeProcess:
    def __init__(self, pid):
        self.pid = pid


class CommandRecorder:
    """Stands in for subprocess.run/Popen and keeps every call in order"""
    def __init__(self, returncode=0):
        self.calls = []
        self.returncode = returncode
        self.next_pid = 1000

    def run(self, args, **kwargs):
        self.calls.append(("run", list(args), kwargs))
        return subprocess.CompletedProcess(args, self.returncode)

    def popen(self, args, **kwargs):
        self.calls.append(("popen", list(args), kwargs))
        self.next_pid += 1
        return FakeProcess(self.next_pid)

    def of_kind(self, kind):
        return [call for call in self.calls if call[0] == kind]


@pytest.fixture
def recorder():
    return CommandRecorder()


@pytest.fixture
def root_dir(tmp_path):
    for i in range(3):
        os.makedirs(tmp_path / f"node{i}")
    return str(tmp_path)


@pytest.fixture
def make_launcher(recorder, root_dir):
    def _make(num_nodes=3, profiler=None, **kwargs):
        config = LaunchConfig(root_dir, 30000, num_nodes, profiler=profiler,
                              host_ip=HOST_IP, binary="/opt/conflux")
        return Launcher(config, run=recorder.run, popen=recorder.popen,
                        kernel_release="6.1.0-test", **kwargs)
    return _make
