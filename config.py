r"""config.py

Static and runtime configuration for gameserver-init.

Values here are defaults. Per-host settings live in the shell-style config
file (``server.conf`` next to the manager, or ``--config``), which
game_server_manager.py reads on every invocation.
"""
from pathlib import Path
import os

# -------------------------
# Static constants
# -------------------------
DEFAULT_CONFIG_FILE = Path(__file__).resolve().parent / "server.conf"
DEFAULT_INSTALL_DIR = Path("/opt/gameserver")
DEFAULT_BINARY_REL = Path("bin/x64/server")
DEFAULT_SAVES_REL = Path("saves")
DEFAULT_USERNAME = "gameserver"
DEFAULT_USERGROUP = "gameserver"
DEFAULT_SAVE_NAME = "server-save"
DEFAULT_SCREEN_NAME = "gameserver"
DEFAULT_LOG_FILENAME = "gameserver_init.log"
DEFAULT_UPDATE_TMPDIR = Path("/tmp")
DEFAULT_SERVICE_NAME = "gameserver"
DEFAULT_DISCORD_TITLE = "Game Server"
WEBHOOK_URL_DEFAULT = ""

# Server arguments
START_SERVER_FLAG = "--start-server"
START_LATEST_FLAG = "--start-server-load-latest"
SAVE_SUFFIX = ".zip"

# Updater exit codes
UPDATE_UP_TO_DATE = 0
UPDATE_AVAILABLE = 2

# Discord embed colours
COLOR_STARTED = 2067276
COLOR_STOPPED = 11027200
COLOR_UPDATED = 10038562

# -------------------------
# Runtime options
# - start_timeout: seconds to wait for the server pid after launching
# - stop_timeout: seconds to wait for the pid to disappear after SIGINT
# - poll_interval: seconds between liveness polls
# -------------------------
RUNTIME = {
    "start_timeout": 10,
    "stop_timeout": 10,
    "poll_interval": 1,
    "debug": False,
}

# Environment overrides (optional)
if "GSI_CONFIG" in os.environ:
    DEFAULT_CONFIG_FILE = Path(os.environ["GSI_CONFIG"])
if "GSI_WEBHOOK" in os.environ:
    WEBHOOK_URL_DEFAULT = os.environ["GSI_WEBHOOK"]
