import os


def _float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


def _port_range(value: str) -> tuple[int, int]:
    low, _, high = value.partition("-")
    return int(low), int(high or low)


API_KEY = os.environ.get("WORKSPACE_HOST_API_KEY", "")
CORS_ALLOWED_ORIGINS = os.environ.get("WORKSPACE_HOST_CORS_ALLOWED_ORIGINS", "*")

PROJECT_ROOT = os.environ.get(
    "WORKSPACE_HOST_PROJECT_ROOT",
    os.path.join(os.path.expanduser("~"), "projects"),
)
LOG_DIR = os.environ.get(
    "WORKSPACE_HOST_LOG_DIR",
    os.path.join(os.path.expanduser("~"), ".workspace-host", "logs"),
)

# Base of the externally reachable gateway; proxy URLs are "{PUBLIC_URL}/proxy/{port}".
PUBLIC_URL = os.environ.get("WORKSPACE_HOST_PUBLIC_URL", "http://localhost:8000").rstrip("/")
PORT_RANGE = _port_range(os.environ.get("WORKSPACE_HOST_PORT_RANGE", "3000-9999"))

COMMAND_TIMEOUT = _float("WORKSPACE_HOST_COMMAND_TIMEOUT", 30 * 60)
STARTUP_WINDOW = _float("WORKSPACE_HOST_STARTUP_WINDOW", 2.0)
STARTUP_POLL_INTERVAL = _float("WORKSPACE_HOST_STARTUP_POLL_INTERVAL", 0.25)
STOP_GRACE = _float("WORKSPACE_HOST_STOP_GRACE", 5.0)
PROXY_TIMEOUT = _float("WORKSPACE_HOST_PROXY_TIMEOUT", 30.0)

# Seconds without a request before the host terminates itself. 0 disables.
IDLE_TIMEOUT = _float("WORKSPACE_HOST_IDLE_TIMEOUT", 10 * 60)
HEALTH_RESETS_IDLE = os.environ.get(
    "WORKSPACE_HOST_HEALTH_RESETS_IDLE", "false"
).lower() in ("1", "true", "yes")

LOG_LEVEL = os.environ.get("WORKSPACE_HOST_LOG_LEVEL", "INFO")
LOG_JSON = os.environ.get("WORKSPACE_HOST_LOG_JSON", "false").lower() in ("1", "true", "yes")
