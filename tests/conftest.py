import json
import socket
import stat
import sys
from pathlib import Path

import pytest

from magic_wrapper import MagicInstanceBuilder

FAKE_MAGIC = Path(__file__).resolve().with_name("fake_magic.py")


def get_port() -> int:
    """Ask the OS for a port that is currently free on the loopback interface."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def fake_magic(tmp_path) -> Path:
    """Executable shim that runs fake_magic.py with the current interpreter."""
    if sys.platform == "win32":
        pytest.skip("fake MAGIC shim needs a POSIX shell")

    shim = tmp_path / "magic"
    shim.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_MAGIC}" "$@"\n')
    shim.chmod(shim.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return shim


@pytest.fixture
def record_path(tmp_path, monkeypatch) -> Path:
    path = tmp_path / "record.json"
    monkeypatch.setenv("FAKE_MAGIC_RECORD", str(path))
    return path


@pytest.fixture
def builder(fake_magic, record_path) -> MagicInstanceBuilder:
    return MagicInstanceBuilder().magic(fake_magic).port(get_port()).startup_timeout(15)


def load_record(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))
