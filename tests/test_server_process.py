"""Tests for the start/stop state machine and pid lookup."""

import signal

import pytest

import config
import game_server_manager as gsm
from game_server_manager import ServerState


class TestMatchesServerCmdline:
    BINARY = "/opt/gameserver/bin/x64/server"

    def test_matches_server_with_start_flag(self):
        assert gsm.matches_server_cmdline([self.BINARY, "--start-server-load-latest"], self.BINARY)

    def test_ignores_screen_wrapper(self):
        cmdline = ["SCREEN", "-dmS", "gameserver", self.BINARY, "--start-server-load-latest"]
        assert not gsm.matches_server_cmdline(cmdline, self.BINARY)

    def test_ignores_binary_without_start_flag(self):
        assert not gsm.matches_server_cmdline([self.BINARY, "--version"], self.BINARY)

    def test_ignores_other_binaries_and_empty(self):
        assert not gsm.matches_server_cmdline(["/usr/bin/vim", "--start-server"], self.BINARY)
        assert not gsm.matches_server_cmdline([], self.BINARY)


class TestAsUser:
    def test_same_user_runs_directly(self, settings):
        assert gsm.as_user(settings, ["ls", "-l"]) == ["ls", "-l"]

    def test_other_user_goes_through_sudo(self, settings, monkeypatch):
        monkeypatch.setattr(gsm, "current_user", lambda: "root")
        assert gsm.as_user(settings, ["ls"]) == ["sudo", "-u", "gameserver", "--", "ls"]


class TestStart:
    def test_start_launches_screen_and_waits_for_pid(self, settings, screen_launches, procs, make_save):
        make_save("world.zip", 1000)
        server = gsm.ServerProcess(settings)
        assert server.state is ServerState.NOT_RUNNING

        pid = server.start()

        assert pid in procs.procs
        assert server.state is ServerState.RUNNING
        launch = screen_launches.find("screen", "-dmS")[0]
        assert launch[:3] == ["screen", "-dmS", "gs-test"]
        assert launch[3:] == [str(settings.binary), config.START_LATEST_FLAG]

    def test_start_includes_server_settings_and_extra_args(self, settings, screen_launches, make_save, tmp_path):
        make_save("world.zip", 1000)
        settings.server_settings = tmp_path / "server-settings.json"
        settings.extra_args = ["--port", "34197"]

        gsm.ServerProcess(settings).start()

        launch = screen_launches.find("screen", "-dmS")[0]
        assert launch[-4:] == ["--server-settings", str(tmp_path / "server-settings.json"), "--port", "34197"]

    def test_relative_install_dir_launches_absolute_binary(self, install_dir, tmp_path, monkeypatch, screen_launches, procs):
        monkeypatch.setattr(gsm, "current_user", lambda: "gameserver")
        monkeypatch.chdir(tmp_path)
        settings = gsm.Settings({"INSTALL_DIR": install_dir.name, "USERNAME": "gameserver", "SCREEN_NAME": "gs-test"})
        (install_dir / "saves" / "world.zip").write_bytes(b"save")

        pid = gsm.ServerProcess(settings).start()

        launch = screen_launches.find("screen", "-dmS")[0]
        assert launch[3] == str(install_dir.resolve() / "bin" / "x64" / "server")
        assert screen_launches.cwds[0] == str(install_dir.resolve())
        assert procs.procs[pid][0] == launch[3]

    def test_start_when_running_fails(self, settings, runner, procs, make_save):
        make_save("world.zip", 1000)
        procs.spawn([str(settings.binary), config.START_LATEST_FLAG])
        server = gsm.ServerProcess(settings)
        assert server.state is ServerState.RUNNING

        with pytest.raises(gsm.ServerManagerError, match="already running"):
            server.start()
        assert runner.calls == []

    def test_start_without_save_fails(self, settings, runner):
        with pytest.raises(gsm.ServerManagerError, match="new-game"):
            gsm.ServerProcess(settings).start()
        assert runner.calls == []

    def test_start_without_binary_fails(self, settings, runner, make_save):
        make_save("world.zip", 1000)
        settings.binary.unlink()

        with pytest.raises(gsm.ServerManagerError, match="install"):
            gsm.ServerProcess(settings).start()

    def test_start_times_out(self, settings, runner, make_save, sleeps):
        make_save("world.zip", 1000)
        server = gsm.ServerProcess(settings)

        with pytest.raises(gsm.ServerManagerError, match="did not come up"):
            server.start()

        assert server.state is ServerState.NOT_RUNNING
        assert sum(sleeps) == config.RUNTIME["start_timeout"]

    def test_screen_failure_resets_state(self, settings, runner, make_save):
        make_save("world.zip", 1000)
        runner.on(lambda c: c[0] == "screen", lambda c: (1, ""))
        server = gsm.ServerProcess(settings)

        with pytest.raises(gsm.ServerManagerError, match="exit code 1"):
            server.start()
        assert server.state is ServerState.NOT_RUNNING


class TestStop:
    def test_stop_sends_sigint_and_waits(self, settings, runner, procs):
        pid = procs.spawn([str(settings.binary), config.START_LATEST_FLAG])
        server = gsm.ServerProcess(settings)

        server.stop()

        assert procs.signals == [(pid, signal.SIGINT)]
        assert server.state is ServerState.NOT_RUNNING
        assert server.pid is None

    def test_stop_when_not_running_fails(self, settings, runner, procs):
        with pytest.raises(gsm.ServerManagerError, match="not running"):
            gsm.ServerProcess(settings).stop()
        assert procs.signals == []

    def test_stop_times_out_when_server_ignores_signal(self, settings, runner, procs, sleeps):
        procs.spawn([str(settings.binary), config.START_LATEST_FLAG])
        procs.ignore_signals = True
        server = gsm.ServerProcess(settings)

        with pytest.raises(gsm.ServerManagerError, match="did not stop"):
            server.stop()

        assert server.state is ServerState.RUNNING
        assert sum(sleeps) == config.RUNTIME["stop_timeout"]

    def test_access_denied_falls_back_to_kill(self, settings, runner, procs, monkeypatch):
        pid = procs.spawn([str(settings.binary), config.START_LATEST_FLAG])

        class DeniedProcess:
            def __init__(self, pid):
                self.pid = pid

            def send_signal(self, sig):
                raise gsm.psutil.AccessDenied(self.pid)

        def kill(cmd):
            procs.procs.pop(pid)
            return 0, ""

        monkeypatch.setattr(gsm.psutil, "Process", DeniedProcess)
        runner.on(lambda c: c[0] == "kill", kill)

        gsm.ServerProcess(settings).stop()

        assert runner.find("kill") == [["kill", "-INT", str(pid)]]


class TestConsole:
    def test_send_command_uses_screen_stuff(self, settings, runner, procs):
        procs.spawn([str(settings.binary), config.START_LATEST_FLAG])

        gsm.ServerProcess(settings).send_command("/save")

        assert runner.calls == [["screen", "-S", "gs-test", "-p", "0", "-X", "stuff", "/save\r"]]

    def test_send_command_requires_running_server(self, settings, runner):
        with pytest.raises(gsm.ServerManagerError, match="not running"):
            gsm.ServerProcess(settings).send_command("/save")

    def test_attach_returns_screen_exit_code(self, settings, runner, procs):
        procs.spawn([str(settings.binary), config.START_LATEST_FLAG])
        runner.on(lambda c: c[:2] == ["screen", "-r"], lambda c: (3, ""))

        assert gsm.ServerProcess(settings).attach() == 3
