# Copyright (c) Syntropy Systems
"""Pytest fixtures for iomatrix tests."""

import stat
import sys
import tempfile
import textwrap
from collections.abc import Generator
from pathlib import Path

import pytest

# Stand-in for fio. Behaviour is picked by the job's ``mode`` parameter:
#   ok        write a result document and exit 0
#   fail      print an error and exit 1
#   garbage   write something that is not JSON
#   nooutput  exit 0 without writing the result document
#   signal    kill itself with SIGKILL
#   hang      spawn a detached child, then sleep
# Invocations without a job file (prep passes) exit with FAKE_FIO_PREP_EXIT.
FAKE_FIO = """\
import json
import os
import signal
import subprocess
import sys
import time

out = None
cfg = None
for arg in sys.argv[1:]:
    if arg.startswith("--output="):
        out = arg.split("=", 1)[1]
    elif not arg.startswith("--"):
        cfg = arg

if cfg is None:
    sys.exit(int(os.environ.get("FAKE_FIO_PREP_EXIT", "0")))

params = {}
section = None
with open(cfg) as f:
    for line in f:
        line = line.strip()
        if line.startswith("["):
            section = line[1:-1]
        elif "=" in line and section != "global":
            key, value = line.split("=", 1)
            params[key] = value

mode = params.get("mode", "ok")
time.sleep(float(params.get("delay", "0")))

if mode == "fail":
    print("fio: something went wrong", file=sys.stderr)
    sys.exit(1)
if mode == "signal":
    os.kill(os.getpid(), signal.SIGKILL)
if mode == "nooutput":
    sys.exit(0)
if mode == "garbage":
    with open(out, "w") as f:
        f.write("this is not json")
    sys.exit(0)
if mode == "hang":
    child = subprocess.Popen(
        [sys.executable, "-c", "import time; time.sleep(120)"],
        start_new_session=True,
    )
    with open(os.environ["FAKE_FIO_CHILD_PID"], "w") as f:
        f.write(str(child.pid))
    time.sleep(120)
    sys.exit(0)

iops = float(params.get("iops", "1000"))
rw = params.get("rw", "read")
job = {"jobname": params.get("name", "fake"), "error": 0, "usr_cpu": 1.5, "sys_cpu": 2.5}
op = {
    "iops": iops,
    "bw": iops * 4,
    "lat_ns": {"mean": 250000.0},
    "clat_ns": {"percentile": {"50.000000": 200000, "99.000000": 900000}},
}
if "read" in rw:
    job["read"] = op
if "write" in rw:
    job["write"] = op
with open(out, "w") as f:
    json.dump({"fio version": "fio-3.36", "jobs": [job]}, f)
"""


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_fio(temp_dir: Path) -> Path:
    """Write an executable fio stand-in and return its path."""
    path = temp_dir / "fake-fio"
    _ = path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(FAKE_FIO))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def matrix_file(temp_dir: Path, fake_fio: Path) -> Path:
    """A small matrix config wired to the fake fio."""
    path = temp_dir / "matrix.yaml"
    _ = path.write_text(
        textwrap.dedent(
            f"""\
            tag: smoke
            axes:
              bs: [4k, 64k]
              rw: [read, write]
            options:
              fio: {fake_fio}
              device: /dev/null
              runtime: 1
              ramp: 0
              timeout: 30
              output_dir: {temp_dir / "out"}
            """
        )
    )
    return path
