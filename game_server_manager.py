#!/usr/bin/env python3
# game_server_manager.py
# Init-style manager for a headless game server running inside a screen session.
# Per-host settings come from server.conf next to this script (or --config).

from __future__ import annotations
import argparse
import enum
import logging
import os
import pwd
import re
import shlex
import shutil
import signal
import subprocess
import sys
import tarfile
import tempfile
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List, Optional

import psutil
import requests
from dotenv import dotenv_values

import config

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_UPDATE_AVAILABLE = 2

VERSION_RE = re.compile(r"Version:\s*(\d+(?:\.\d+)+)")


class ServerManagerError(RuntimeError):
    """Raised when a command cannot complete; main() turns it into exit code 1."""


# -------------------------
# Logging helpers
# -------------------------
def normalize_level(level_param):
    if isinstance(level_param, int):
        return level_param
    if isinstance(level_param, str):
        lv = logging.getLevelName(level_param.upper())
        return lv if isinstance(lv, int) else logging.INFO
    return logging.INFO


def log(msg: str, level=logging.INFO):
    logging.log(normalize_level(level), msg)


def setup_logging(log_file: Optional[Path], debug: bool = False):
    logger = logging.getLogger()
    if logger.handlers:
        logger.handlers.clear()
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    fmt = logging.Formatter("[%(asctime)s] %(levelname)s: %(message)s")
    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.DEBUG if debug else logging.INFO)
    ch.setFormatter(fmt)
    logger.addHandler(ch)
    if log_file is None:
        return
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(str(log_file), maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
    except OSError as e:
        log(f"Cannot open log file {log_file} ({e}); logging to console only.", logging.WARNING)
        return
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(fmt)
    logger.addHandler(fh)
    logging.debug(f"Logging initialized; file: {log_file}")


# -------------------------
# Configuration file
# -------------------------
def _truthy(value) -> bool:
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


def _optional_path(value) -> Optional[Path]:
    return Path(value).expanduser().resolve() if value else None


class Settings:
    """Per-host settings resolved from the config file on top of config.py defaults."""

    KEYS = (
        "INSTALL_DIR", "BINARY", "SAVES_DIR", "USERNAME", "USERGROUP", "SAVE_NAME",
        "SCREEN_NAME", "SERVER_SETTINGS", "MAP_GEN_SETTINGS", "EXTRA_ARGS",
        "UPDATE_SCRIPT", "UPDATE_EXPERIMENTAL", "UPDATE_TMPDIR", "WEBHOOK_URL",
        "LOG_FILE", "DEBUG",
    )

    def __init__(self, values: Optional[Dict[str, str]] = None):
        values = dict(values or {})
        # Commands run with cwd=install_dir, so every path must be absolute.
        self.install_dir = Path(values.get("INSTALL_DIR") or config.DEFAULT_INSTALL_DIR).expanduser().resolve()
        self.binary = _optional_path(values.get("BINARY")) or self.install_dir / config.DEFAULT_BINARY_REL
        self.saves_dir = _optional_path(values.get("SAVES_DIR")) or self.install_dir / config.DEFAULT_SAVES_REL
        self.username = values.get("USERNAME") or config.DEFAULT_USERNAME
        self.usergroup = values.get("USERGROUP") or config.DEFAULT_USERGROUP
        self.save_name = normalize_save_name(values.get("SAVE_NAME") or config.DEFAULT_SAVE_NAME)
        self.screen_name = values.get("SCREEN_NAME") or config.DEFAULT_SCREEN_NAME
        self.server_settings = _optional_path(values.get("SERVER_SETTINGS"))
        self.map_gen_settings = _optional_path(values.get("MAP_GEN_SETTINGS"))
        self.extra_args = shlex.split(values.get("EXTRA_ARGS") or "")
        self.update_script = _optional_path(values.get("UPDATE_SCRIPT"))
        self.update_experimental = _truthy(values.get("UPDATE_EXPERIMENTAL"))
        self.update_tmpdir = _optional_path(values.get("UPDATE_TMPDIR")) or config.DEFAULT_UPDATE_TMPDIR.resolve()
        self.webhook_url = values.get("WEBHOOK_URL", config.WEBHOOK_URL_DEFAULT)
        self.log_file = _optional_path(values.get("LOG_FILE")) or self.install_dir / config.DEFAULT_LOG_FILENAME
        self.debug = _truthy(values.get("DEBUG")) or bool(config.RUNTIME.get("debug", False))


def read_config_file(path: Path) -> Dict[str, str]:
    """
    Read a KEY=value file with python-dotenv.

    Quoting, ``export`` prefixes and ``#`` comments follow dotenv rules, so a
    ``#`` only starts a comment when preceded by whitespace. Lines dotenv
    cannot parse and bare keys without a value are skipped. Unknown keys are
    reported and dropped.
    """
    path = Path(path).expanduser()
    if not path.is_file():
        raise ServerManagerError(f"Config file not found: {path}")
    values = {k: v for k, v in dotenv_values(path, encoding="utf-8").items() if v is not None}
    for key in sorted(set(values) - set(Settings.KEYS)):
        log(f"{path}: unknown setting {key} ignored", logging.WARNING)
        del values[key]
    return values


def load_settings(path: Path) -> Settings:
    values = read_config_file(path)
    log(f"Loaded {len(values)} settings from {path}", logging.DEBUG)
    return Settings(values)


# -------------------------
# Command helpers
# -------------------------
def is_root():
    try:
        return os.geteuid() == 0
    except Exception:
        return False


def current_user() -> str:
    return pwd.getpwuid(os.geteuid()).pw_name


def as_user(settings: Settings, cmd: List[str]) -> List[str]:
    """Prefix cmd with sudo unless we already are the server user."""
    cmd = [str(c) for c in cmd]
    if current_user() == settings.username:
        return cmd
    return ["sudo", "-u", settings.username, "--"] + cmd


def run_as_user(settings: Settings, cmd: List[str], check: bool = True, capture: bool = False,
                cwd: Optional[Path] = None) -> subprocess.CompletedProcess:
    full = as_user(settings, cmd)
    log(f"Running: {shlex.join(full)}", logging.DEBUG)
    try:
        return subprocess.run(full, check=check, capture_output=capture, text=True,
                              cwd=str(cwd) if cwd else None)
    except subprocess.CalledProcessError as e:
        raise ServerManagerError(f"Command failed with exit code {e.returncode}: {shlex.join(full)}") from e
    except OSError as e:
        raise ServerManagerError(f"Could not run {full[0]}: {e}") from e


def chown_tree(root: Path, user: str, group: str):
    try:
        shutil.chown(root, user, group)
        for dirpath, dirnames, filenames in os.walk(root):
            for name in dirnames + filenames:
                shutil.chown(os.path.join(dirpath, name), user, group)
    except (LookupError, OSError) as e:
        log(f"Could not chown {root} to {user}:{group}: {e}", logging.WARNING)


def natural_key(name: str):
    return [int(tok) if tok.isdigit() else tok for tok in re.split(r"(\d+)", name)]


# -------------------------
# Webhook
# -------------------------
def post_discord_embed(settings: Settings, description: str, color: int):
    if not settings.webhook_url:
        logging.getLogger().debug("Webhook not configured; skipping Discord post.")
        return
    payload = {"content": None, "embeds": [{"title": config.DEFAULT_DISCORD_TITLE, "description": description, "color": color}]}
    try:
        r = requests.post(settings.webhook_url, json=payload, timeout=10)
        r.raise_for_status()
        log("Discord webhook posted.", logging.DEBUG)
    except requests.RequestException as e:
        log(f"Failed to post Discord webhook: {e}", logging.WARNING)


# -------------------------
# Server lifecycle (ServerProcess)
# -------------------------
class ServerState(enum.Enum):
    NOT_RUNNING = "not-running"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


def matches_server_cmdline(cmdline: List[str], binary: str) -> bool:
    # The screen wrapper carries the binary as an argument, so only argv[0] counts.
    if not cmdline or cmdline[0] != binary:
        return False
    return any(arg.startswith(config.START_SERVER_FLAG) for arg in cmdline[1:])


class ServerProcess:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.pid: Optional[int] = self.find_pid()
        self.state = ServerState.RUNNING if self.pid else ServerState.NOT_RUNNING

    def _set_state(self, state: ServerState):
        if state is not self.state:
            log(f"Server state: {self.state.value} -> {state.value}", logging.DEBUG)
        self.state = state

    def find_pid(self) -> Optional[int]:
        binary = str(self.settings.binary)
        for proc in psutil.process_iter(["pid", "cmdline"]):
            if matches_server_cmdline(proc.info.get("cmdline") or [], binary):
                return proc.info["pid"]
        return None

    def is_running(self) -> bool:
        self.pid = self.find_pid()
        return self.pid is not None

    def invocation(self) -> List[str]:
        s = self.settings
        args = [str(s.binary), config.START_LATEST_FLAG]
        if s.server_settings:
            args += ["--server-settings", str(s.server_settings)]
        return args + s.extra_args

    def screen_command(self) -> List[str]:
        return ["screen", "-dmS", self.settings.screen_name] + self.invocation()

    def _wait(self, want_running: bool, timeout: int) -> bool:
        interval = config.RUNTIME.get("poll_interval", 1)
        waited = 0
        while self.is_running() != want_running:
            if waited >= timeout:
                return False
            time.sleep(interval)
            waited += interval
        return True

    def start(self) -> int:
        s = self.settings
        if self.is_running():
            raise ServerManagerError(f"Server is already running (pid {self.pid}).")
        if not s.binary.exists():
            raise ServerManagerError(f"Server binary not found: {s.binary}. Run install first.")
        if SaveManager(s).latest_save() is None:
            raise ServerManagerError(f"No save found in {s.saves_dir}; run new-game first.")

        self._set_state(ServerState.STARTING)
        log(f"Starting server in screen session '{s.screen_name}'...", logging.INFO)
        try:
            run_as_user(s, self.screen_command(), cwd=s.install_dir)
        except ServerManagerError:
            self._set_state(ServerState.NOT_RUNNING)
            raise
        timeout = config.RUNTIME.get("start_timeout", 10)
        if not self._wait(True, timeout):
            self._set_state(ServerState.NOT_RUNNING)
            raise ServerManagerError(f"Server did not come up within {timeout}s; check 'screen' output.")
        self._set_state(ServerState.RUNNING)
        log(f"Server started with PID {self.pid}", logging.INFO)
        return self.pid

    def _interrupt(self, pid: int):
        try:
            psutil.Process(pid).send_signal(signal.SIGINT)
        except psutil.NoSuchProcess:
            log(f"Process {pid} exited before it was signalled.", logging.DEBUG)
        except psutil.AccessDenied:
            run_as_user(self.settings, ["kill", "-INT", str(pid)])

    def stop(self):
        if not self.is_running():
            raise ServerManagerError("Server is not running.")
        pid = self.pid
        self._set_state(ServerState.STOPPING)
        log(f"Stopping server (pid={pid})", logging.INFO)
        self._interrupt(pid)
        timeout = config.RUNTIME.get("stop_timeout", 10)
        if not self._wait(False, timeout):
            self._set_state(ServerState.RUNNING)
            raise ServerManagerError(f"Server (pid {pid}) did not stop within {timeout}s.")
        self._set_state(ServerState.NOT_RUNNING)
        log("Server stopped.", logging.INFO)

    def send_command(self, text: str):
        if not self.is_running():
            raise ServerManagerError("Server is not running.")
        run_as_user(self.settings, ["screen", "-S", self.settings.screen_name, "-p", "0", "-X", "stuff", text + "\r"])

    def attach(self) -> int:
        if not self.is_running():
            raise ServerManagerError("Server is not running; nothing to attach to.")
        log("Attaching to screen; detach with Ctrl-a d.", logging.INFO)
        return run_as_user(self.settings, ["screen", "-r", self.settings.screen_name], check=False).returncode


# -------------------------
# Saves
# -------------------------
def normalize_save_name(name: str) -> str:
    name = (name or "").strip()
    if name.endswith(config.SAVE_SUFFIX):
        name = name[:-len(config.SAVE_SUFFIX)]
    if not name or name.startswith(".") or "/" in name or "\\" in name:
        raise ServerManagerError(f"Invalid save name: {name!r}")
    return name


class SaveManager:
    """Save files under the saves directory. The server always loads the newest one."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.saves_dir = settings.saves_dir

    def path_for(self, name: str) -> Path:
        return self.saves_dir / (normalize_save_name(name) + config.SAVE_SUFFIX)

    def list_saves(self) -> List[Path]:
        if not self.saves_dir.is_dir():
            return []
        return [p for p in self.saves_dir.iterdir() if p.is_file() and p.suffix == config.SAVE_SUFFIX]

    def latest_save(self) -> Optional[Path]:
        saves = self.list_saves()
        if not saves:
            return None
        return max(saves, key=lambda p: (p.stat().st_mtime, p.name))

    def _fix_owner(self, path: Path):
        if is_root():
            chown_tree(path, self.settings.username, self.settings.usergroup)

    def _copy(self, src: Path, dst: Path):
        try:
            shutil.copy2(src, dst)
        except OSError as e:
            raise ServerManagerError(f"Failed to copy {src} to {dst}: {e}") from e
        self._fix_owner(dst)
        log(f"Copied {src.name} -> {dst}", logging.INFO)

    def create(self, server: ServerProcess) -> Path:
        s = self.settings
        if server.is_running():
            raise ServerManagerError("Stop the server before creating a new game.")
        if not s.binary.exists():
            raise ServerManagerError(f"Server binary not found: {s.binary}. Run install first.")
        target = self.path_for(s.save_name)
        if target.exists():
            raise ServerManagerError(f"Save {target} already exists; refusing to overwrite it.")
        if not self.saves_dir.exists():
            self.saves_dir.mkdir(parents=True)
            self._fix_owner(self.saves_dir)
        cmd = [str(s.binary), "--create", str(target)]
        if s.map_gen_settings:
            cmd += ["--map-gen-settings", str(s.map_gen_settings)]
        log(f"Creating new game {target.name}...", logging.INFO)
        run_as_user(s, cmd, cwd=s.install_dir)
        if not target.exists():
            raise ServerManagerError(f"Server exited cleanly but {target} was not created.")
        return target

    def snapshot(self, name: str) -> Path:
        target = self.path_for(name)
        latest = self.latest_save()
        if latest is None:
            raise ServerManagerError(f"No save found in {self.saves_dir} to copy.")
        if target.exists():
            raise ServerManagerError(f"Save {target.name} already exists; pick another name.")
        self._copy(latest, target)
        return target

    def touch(self, name: str) -> Path:
        target = self.path_for(name)
        if not target.is_file():
            raise ServerManagerError(f"Save not found: {target}")
        newest = self.latest_save()
        stamp = time.time()
        if newest is not None and newest != target:
            stamp = max(stamp, newest.stat().st_mtime + 1)
        try:
            os.utime(target, (stamp, stamp))
        except OSError as e:
            raise ServerManagerError(f"Failed to touch {target}: {e}") from e
        log(f"{target.name} is now the newest save.", logging.INFO)
        return target

    def refresh(self) -> Path:
        target = self.path_for(self.settings.save_name)
        latest = self.latest_save()
        if latest is None:
            raise ServerManagerError(f"No save found in {self.saves_dir}.")
        if latest == target:
            log(f"{target.name} is already the newest save.", logging.INFO)
            return target
        self._copy(latest, target)
        return target


# -------------------------
# Install
# -------------------------
def install_tarball(settings: Settings, tarball: Path):
    tarball = Path(tarball).expanduser()
    if settings.binary.exists():
        raise ServerManagerError(f"Server already installed at {settings.install_dir}; use update instead.")
    if not tarball.is_file():
        raise ServerManagerError(f"Tarball not found: {tarball}")
    dest = settings.install_dir.parent
    expected = settings.install_dir.name
    log(f"Installing {tarball.name} into {dest}...", logging.INFO)
    try:
        with tarfile.open(tarball, "r:*") as tar:
            members = tar.getmembers()
            tops = {Path(m.name).parts[0] for m in members if Path(m.name).parts}
            if any(".." in Path(m.name).parts for m in members):
                raise ServerManagerError(f"Tarball {tarball.name} contains paths outside its top-level directory.")
            if tops != {expected}:
                found = ", ".join(sorted(tops)) or "nothing"
                raise ServerManagerError(f"Tarball must contain a single top-level '{expected}' directory (found: {found}).")
            dest.mkdir(parents=True, exist_ok=True)
            if hasattr(tarfile, "data_filter"):
                tar.extractall(path=str(dest), filter="data")
            else:
                tar.extractall(path=str(dest))
    except (tarfile.TarError, OSError) as e:
        raise ServerManagerError(f"Failed to extract {tarball}: {e}") from e
    if not settings.binary.exists():
        raise ServerManagerError(f"Extraction finished but {settings.binary} is missing.")
    settings.saves_dir.mkdir(parents=True, exist_ok=True)
    if is_root():
        chown_tree(settings.install_dir, settings.username, settings.usergroup)
    log(f"Installed server to {settings.install_dir}", logging.INFO)


# -------------------------
# Version & update
# -------------------------
def get_version(settings: Settings) -> str:
    if not settings.binary.exists():
        raise ServerManagerError(f"Server binary not found: {settings.binary}")
    result = run_as_user(settings, [str(settings.binary), "--version"], capture=True)
    match = VERSION_RE.search(result.stdout or "")
    if not match:
        raise ServerManagerError(f"Could not parse version from '{settings.binary} --version'.")
    return match.group(1)


def updater_command(settings: Settings, version: str, output_dir: Optional[Path] = None,
                    dry_run: bool = False) -> List[str]:
    script = settings.update_script
    if script is None:
        raise ServerManagerError("UPDATE_SCRIPT is not configured.")
    if not script.is_file():
        raise ServerManagerError(f"Updater script not found: {script}")
    cmd = [sys.executable, str(script)] if script.suffix == ".py" else [str(script)]
    cmd += ["--for-version", version]
    if settings.update_experimental:
        cmd.append("--experimental")
    if dry_run:
        cmd.append("--dry-run")
    if output_dir is not None:
        cmd += ["--output-path", str(output_dir)]
    return cmd


def check_for_update(settings: Settings, version: str) -> bool:
    """
    Ask the updater whether a newer version exists.
    Returns:
      False = up to date (updater exit 0)
      True  = update available (updater exit 2)
    Any other exit code is an error.
    """
    cmd = updater_command(settings, version, dry_run=True)
    log(f"Checking for updates: {shlex.join(cmd)}", logging.DEBUG)
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise ServerManagerError(f"Could not run updater: {e}") from e
    for line in (result.stdout or "").splitlines():
        log(f"updater: {line}", logging.DEBUG)
    if result.returncode == config.UPDATE_UP_TO_DATE:
        return False
    if result.returncode == config.UPDATE_AVAILABLE:
        return True
    detail = (result.stderr or "").strip()
    raise ServerManagerError(f"Updater failed with exit code {result.returncode}" + (f": {detail}" if detail else ""))


def download_patches(settings: Settings, version: str, output_dir: Path) -> List[Path]:
    cmd = updater_command(settings, version, output_dir=output_dir)
    log("Downloading update patches...", logging.INFO)
    try:
        subprocess.run(cmd, check=True)
    except subprocess.CalledProcessError as e:
        raise ServerManagerError(f"Updater failed with exit code {e.returncode} while downloading.") from e
    except OSError as e:
        raise ServerManagerError(f"Could not run updater: {e}") from e
    patches = sorted((p for p in output_dir.iterdir() if p.is_file() and p.suffix == ".zip"),
                     key=lambda p: natural_key(p.name))
    if not patches:
        raise ServerManagerError("Updater reported a new version but downloaded no patches.")
    return patches


def apply_patches(settings: Settings, patches: List[Path]):
    for patch in sorted(patches, key=lambda p: natural_key(p.name)):
        log(f"Applying update {patch.name}", logging.INFO)
        run_as_user(settings, [str(settings.binary), "--apply-update", str(patch)], cwd=settings.install_dir)


def update_server(settings: Settings, server: ServerProcess, dry_run: bool = False) -> int:
    version = get_version(settings)
    log(f"Installed version: {version}", logging.INFO)
    if not check_for_update(settings, version):
        log("Server is up to date.", logging.INFO)
        return EXIT_OK
    if dry_run:
        log("A new version is available (dry run; nothing changed).", logging.INFO)
        return EXIT_UPDATE_AVAILABLE

    tmpdir = Path(tempfile.mkdtemp(prefix="gameserver-update-", dir=str(settings.update_tmpdir)))
    try:
        # The server user applies the patches.
        os.chmod(tmpdir, 0o755)
        patches = download_patches(settings, version, tmpdir)
        was_running = server.is_running()
        if was_running:
            server.stop()
        apply_patches(settings, patches)
        new_version = get_version(settings)
        log(f"Updated server {version} -> {new_version}", logging.INFO)
        post_discord_embed(settings, f"Server updated {version} -> {new_version}.", config.COLOR_UPDATED)
        if was_running:
            server.start()
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)
    return EXIT_OK


# -------------------------
# Service helpers
# -------------------------
def service_unit(settings: Settings, script_path: Path, config_path: Path) -> str:
    exec_base = f"{sys.executable} {script_path} --config {config_path}"
    return f"""[Unit]
Description=Game server ({settings.screen_name})
After=network.target

[Service]
Type=oneshot
RemainAfterExit=yes
ExecStart={exec_base} start
ExecStop={exec_base} stop
User={settings.username}
Group={settings.usergroup}
WorkingDirectory={settings.install_dir}

[Install]
WantedBy=multi-user.target
"""


def install_systemd_service(settings: Settings, script_path: Path, config_path: Path, service_name: str):
    unit_path = Path("/etc/systemd/system") / f"{service_name}.service"
    if not is_root():
        raise ServerManagerError("systemd install requires root")
    try:
        unit_path.write_text(service_unit(settings, script_path, config_path), encoding="utf-8")
        subprocess.run(["systemctl", "daemon-reload"], check=True)
        subprocess.run(["systemctl", "enable", service_name], check=True)
    except (OSError, subprocess.CalledProcessError) as e:
        raise ServerManagerError(f"Failed to install systemd service: {e}") from e
    log(f"Installed systemd service {unit_path}", logging.INFO)


def remove_systemd_service(service_name: str):
    unit_path = Path("/etc/systemd/system") / f"{service_name}.service"
    if not is_root():
        raise ServerManagerError("systemd removal requires root")
    try:
        subprocess.run(["systemctl", "disable", service_name], check=False)
        if unit_path.exists():
            unit_path.unlink()
        subprocess.run(["systemctl", "daemon-reload"], check=True)
    except (OSError, subprocess.CalledProcessError) as e:
        raise ServerManagerError(f"Failed to remove systemd service: {e}") from e
    log("Removed systemd service", logging.INFO)


# -------------------------
# Commands
# -------------------------
def cmd_start(settings, args):
    pid = ServerProcess(settings).start()
    post_discord_embed(settings, f"Server started (pid {pid}).", config.COLOR_STARTED)
    return EXIT_OK


def cmd_stop(settings, args):
    ServerProcess(settings).stop()
    post_discord_embed(settings, "Server stopped.", config.COLOR_STOPPED)
    return EXIT_OK


def cmd_restart(settings, args):
    server = ServerProcess(settings)
    if server.is_running():
        server.stop()
    else:
        log("Server is not running; starting it.", logging.INFO)
    pid = server.start()
    post_discord_embed(settings, f"Server restarted (pid {pid}).", config.COLOR_STARTED)
    return EXIT_OK


def cmd_status(settings, args):
    server = ServerProcess(settings)
    if server.is_running():
        print(f"{settings.screen_name} is running (pid {server.pid}).")
        return EXIT_OK
    print(f"{settings.screen_name} is not running.")
    return EXIT_FAILURE


def cmd_new_game(settings, args):
    SaveManager(settings).create(ServerProcess(settings))
    return EXIT_OK


def cmd_save_game(settings, args):
    SaveManager(settings).snapshot(args.name)
    return EXIT_OK


def cmd_load_save(settings, args):
    saves = SaveManager(settings)
    if not saves.path_for(args.name).is_file():
        raise ServerManagerError(f"Save not found: {saves.path_for(args.name)}")
    server = ServerProcess(settings)
    was_running = server.is_running()
    if was_running:
        server.stop()
    try:
        saves.touch(args.name)
    finally:
        if was_running:
            server.start()
    return EXIT_OK


def cmd_refresh_save(settings, args):
    SaveManager(settings).refresh()
    return EXIT_OK


def cmd_screen(settings, args):
    rc = ServerProcess(settings).attach()
    return EXIT_OK if rc == 0 else EXIT_FAILURE


def cmd_install(settings, args):
    install_tarball(settings, args.tarball)
    return EXIT_OK


def cmd_update(settings, args):
    return update_server(settings, ServerProcess(settings), dry_run=args.dry_run)


def cmd_cmd(settings, args):
    ServerProcess(settings).send_command(" ".join(args.text))
    return EXIT_OK


def cmd_version(settings, args):
    print(get_version(settings))
    return EXIT_OK


def cmd_invocation(settings, args):
    print(shlex.join(as_user(settings, ServerProcess(settings).screen_command())))
    return EXIT_OK


def cmd_install_service(settings, args):
    install_systemd_service(settings, Path(__file__).resolve(), args.config_path, args.service_name)
    return EXIT_OK


def cmd_remove_service(settings, args):
    remove_systemd_service(args.service_name)
    return EXIT_OK


COMMANDS = {
    "start": cmd_start,
    "stop": cmd_stop,
    "restart": cmd_restart,
    "status": cmd_status,
    "new-game": cmd_new_game,
    "save-game": cmd_save_game,
    "load-save": cmd_load_save,
    "refresh-save": cmd_refresh_save,
    "screen": cmd_screen,
    "install": cmd_install,
    "update": cmd_update,
    "cmd": cmd_cmd,
    "version": cmd_version,
    "invocation": cmd_invocation,
    "install-service": cmd_install_service,
    "remove-service": cmd_remove_service,
}


# -------------------------
# CLI / Entrypoint
# -------------------------
def build_arg_parser():
    p = argparse.ArgumentParser(prog="gameserver-init", description="Init-style manager for a headless game server")
    p.add_argument("--config", "-c", type=Path, default=None, help=f"Config file (default: {config.DEFAULT_CONFIG_FILE})")
    p.add_argument("--log-file", default=None, help="Path to log file (overrides LOG_FILE)")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="command", metavar="command")
    sub.required = True
    sub.add_parser("start", help="Start the server in a detached screen session")
    sub.add_parser("stop", help="Stop the server (it saves on SIGINT)")
    sub.add_parser("restart", help="Stop if running, then start")
    sub.add_parser("status", help="Exit 0 if the server is running, 1 otherwise")
    sub.add_parser("new-game", help="Create SAVE_NAME as a fresh map")
    sp = sub.add_parser("save-game", help="Copy the newest save to <name>")
    sp.add_argument("name")
    sp = sub.add_parser("load-save", help="Make <name> the newest save, restarting a running server")
    sp.add_argument("name")
    sub.add_parser("refresh-save", help="Copy the newest save over SAVE_NAME")
    sub.add_parser("screen", help="Attach to the server's screen session")
    sp = sub.add_parser("install", help="Install the server from a release tarball")
    sp.add_argument("tarball", type=Path)
    sp = sub.add_parser("update", help="Update via UPDATE_SCRIPT; exit 2 on --dry-run when an update exists")
    sp.add_argument("--dry-run", action="store_true", help="Only check; exit 2 if a new version is available")
    sp = sub.add_parser("cmd", help="Send a console command to the running server")
    sp.add_argument("text", nargs="+")
    sub.add_parser("version", help="Print the installed server version")
    sub.add_parser("invocation", help="Print the command used to start the server")
    for name, help_text in (("install-service", "Install a systemd unit (root)"), ("remove-service", "Remove the systemd unit (root)")):
        sp = sub.add_parser(name, help=help_text)
        sp.add_argument("--service-name", default=config.DEFAULT_SERVICE_NAME, help="systemd unit name")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        # Exit code 2 is reserved for "update available".
        return EXIT_OK if e.code in (0, None) else EXIT_FAILURE

    setup_logging(None, debug=args.debug)
    args.config_path = (args.config or config.DEFAULT_CONFIG_FILE).expanduser().resolve()
    try:
        settings = load_settings(args.config_path)
    except ServerManagerError as e:
        log(str(e), logging.ERROR)
        return EXIT_FAILURE

    log_file = Path(args.log_file) if args.log_file else settings.log_file
    setup_logging(log_file, debug=args.debug or settings.debug)
    log(f"{args.command}: config={args.config_path} binary={settings.binary}", logging.DEBUG)

    try:
        return COMMANDS[args.command](settings, args)
    except ServerManagerError as e:
        log(str(e), logging.ERROR)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        log("Interrupted by user", logging.INFO)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
