import os
from pathlib import Path

DATA_FILE_NAME = "data.json"

HEALTH_CHECK_TIMEOUT = 10
SSL_CONNECT_TIMEOUT = 10
API_CALL_TIMEOUT = 30
PING_TIMEOUT = 5

CATEGORY_DELETE_POLICIES = ("orphan", "cascade", "reject")


def get_data_dir() -> Path:
    """Directory holding the persisted document (``DATA_DIR``)."""
    return Path(os.environ.get("DATA_DIR", str(Path.cwd() / "data")))


def get_data_file() -> Path:
    return get_data_dir() / DATA_FILE_NAME


def get_host() -> str:
    return os.environ.get("LINKDECK_HOST", "127.0.0.1")


def get_port() -> int:
    return int(os.environ.get("LINKDECK_PORT", "8765"))


def get_allowed_origins() -> list[str]:
    return (os.environ.get("ALLOW_ORIGIN") or "*").split(",")


def get_category_delete_policy() -> str:
    policy = os.environ.get("CATEGORY_DELETE_POLICY", "orphan").strip().lower()
    if policy not in CATEGORY_DELETE_POLICIES:
        raise ValueError(
            f"CATEGORY_DELETE_POLICY must be one of {', '.join(CATEGORY_DELETE_POLICIES)}"
        )
    return policy


def get_sweep_workers() -> int:
    return max(1, int(os.environ.get("HEALTH_SWEEP_WORKERS", "4")))


def sweep_enabled() -> bool:
    return os.environ.get("HEALTH_SWEEP_ENABLED", "").lower() in {"1", "true", "yes"}


def get_log_level() -> str:
    return os.environ.get("LOG_LEVEL", "INFO").upper()
