"""Shared fixtures for the gameserver-init tests.

Nothing here touches real processes: subprocess.run, psutil's process
table and time.sleep are replaced with in-memory fakes.
"""

import logging
import os
import subprocess
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import game_server_manager as gsm  # noqa: E402


class FakeProcessTable:
    """Stands in for psutil.process_iter / psutil.Process."""

    def __init__(self):
        self.procs = {}
        self.signals = []
        self.ignore_signals = False
        self.next_pid = 4242

    def spawn(self, cmdline):
        pid = self.next_pid
        self.next_pid += 1
        self.procs[pid] = list(cmdline)
        return pid

    def process_iter(self, attrs=None):
        for pid, cmdline in list(self.procs.items()):
            yield SimpleNamespace(info={"pid": pid, "cmdline": cmdline})

    def Process(self, pid):
        table = self

        class _Proc:
            def send_signal(self, sig):
                table.signals.append((pid, sig))
                if not table.ignore_signals:
                    table.procs.pop(pid, None)

        return _Proc()


class FakeRunner:
    """Records subprocess.run calls and answers them from registered handlers."""

    def __init__(self):
        self.calls = []
        self.handlers = []
        self.cwds = []

    def on(self, predicate, action):
        self.handlers.append((predicate, action))

    def __call__(self, cmd, check=False, capture_output=False, text=False, cwd=None, **kwargs):
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        self.cwds.append(cwd)
        rc, out = 0, ""
        for predicate, action in self.handlers:
            if predicate(cmd):
                rc, out = action(cmd)
                break
        if check and rc != 0:
            raise subprocess.CalledProcessError(rc, cmd, output=out)
        return subprocess.CompletedProcess(cmd, rc, stdout=out, stderr="")

    def find(self, *parts):
        return [c for c in self.calls if all(p in c for p in parts)]


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for h in root.handlers:
        if h not in handlers:
            h.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture(autouse=True)
def sleeps(monkeypatch):
    calls = []
    monkeypatch.setattr(gsm.time, "sleep", lambda s: calls.append(s))
    return calls


@pytest.fixture
def procs(monkeypatch):
    table = FakeProcessTable()
    monkeypatch.setattr(gsm.psutil, "process_iter", table.process_iter)
    monkeypatch.setattr(gsm.psutil, "Process", table.Process)
    return table


@pytest.fixture
def runner(monkeypatch, procs):
    fake = FakeRunner()
    monkeypatch.setattr(gsm.subprocess, "run", fake)
    return fake


@pytest.fixture
def install_dir(tmp_path):
    root = tmp_path / "gameserver"
    binary = root / "bin" / "x64" / "server"
    binary.parent.mkdir(parents=True)
    binary.write_text("#!/bin/sh\n")
    binary.chmod(0o755)
    (root / "saves").mkdir()
    return root


@pytest.fixture
def settings(install_dir, tmp_path, monkeypatch):
    monkeypatch.setattr(gsm, "current_user", lambda: "gameserver")
    monkeypatch.setattr(gsm, "is_root", lambda: False)
    return gsm.Settings({
        "INSTALL_DIR": str(install_dir),
        "USERNAME": "gameserver",
        "SAVE_NAME": "world",
        "SCREEN_NAME": "gs-test",
        "UPDATE_TMPDIR": str(tmp_path),
        "LOG_FILE": str(tmp_path / "logs" / "gsi.log"),
    })


@pytest.fixture
def screen_launches(runner, procs):
    """Make `screen -dmS` spawn the wrapped server command in the fake process table."""
    def launch(cmd):
        procs.spawn(cmd[3:])
        return 0, ""

    runner.on(lambda c: c[:2] == ["screen", "-dmS"], launch)
    return runner


@pytest.fixture
def make_save(settings):
    def _make(name, mtime, content=b"save"):
        path = settings.saves_dir / name
        path.write_bytes(content)
        os.utime(path, (mtime, mtime))
        return path

    return _make
