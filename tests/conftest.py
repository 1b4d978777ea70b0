import os
import stat
import sys
import textwrap
import time

import pytest

from coordinator.config import CoordinatorSettings
from coordinator.wakelock import WakeLock


def wait_until(predicate, timeout=5.0, interval=0.02):
    """Poll ``predicate`` until it is truthy or ``timeout`` seconds pass."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


# Fake engine binaries: print what the real ones print, then idle

FAKE_SERVER = """
import json, os, sys, time
with open("launch.json", "w") as f:
    json.dump({"argv": sys.argv[1:], "env": dict(os.environ)}, f)
print("main: loading model", flush=True)
print("llm_load_tensors: offloaded 16/32 layers to GPU", flush=True)
print("main: server is listening on http://0.0.0.0:8080", flush=True)
time.sleep(60)
"""

FAKE_RPC_SERVER = """
import json, os, sys, time
with open("launch.json", "w") as f:
    json.dump({"argv": sys.argv[1:], "env": dict(os.environ)}, f)
print("Starting RPC server v3.0.0", flush=True)
print("  endpoint       : 0.0.0.0:50052", flush=True)
print("Accepted client connection", flush=True)
time.sleep(60)
"""

FAKE_CRASH = """
import sys
print("main: loading model", flush=True)
sys.exit(3)
"""


@pytest.fixture
def make_binary(tmp_path):
    """Create an executable that runs a Python script with this interpreter."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()

    def make(name, script):
        script_path = bin_dir / f"{name}.py"
        script_path.write_text(textwrap.dedent(script))
        binary = bin_dir / name
        binary.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script_path}" "$@"\n')
        binary.chmod(binary.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(binary)

    return make


@pytest.fixture
def settings(tmp_path, make_binary):
    return CoordinatorSettings(
        server_binary=make_binary("llama-server", FAKE_SERVER),
        rpc_binary=make_binary("rpc-server", FAKE_RPC_SERVER),
        data_dir=tmp_path / "data",
        cache_dir=tmp_path / "cache",
        stop_timeout=5.0,
        inhibit_sleep=False,
    )


@pytest.fixture
def wake_lock():
    return WakeLock(enabled=False)


posix_only = pytest.mark.skipif(os.name != "posix", reason="fake binaries are shell scripts")
