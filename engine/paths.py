import os
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent

def _is_container_runtime():
    if os.path.exists("/.dockerenv"):
        return True
    return os.path.isdir("/data")


def _default_root_paths():
    if _is_container_runtime():
        base = Path("/data")
    else:
        base = PROJECT_ROOT / "data"
    return {
        "data": base,
        "downloads": base / "downloads",
        "logs": base / "logs",
    }


_DEFAULTS = _default_root_paths()

DATA_DIR = Path(os.environ.get("AUDIOPIPE_DATA_DIR", _DEFAULTS["data"])).resolve()
DOWNLOADS_DIR = Path(os.environ.get("AUDIOPIPE_DOWNLOADS_DIR", DATA_DIR / "downloads")).resolve()
LOG_DIR = Path(os.environ.get("AUDIOPIPE_LOG_DIR", DATA_DIR / "logs")).resolve()


@dataclass(frozen=True)
class EnginePaths:
    log_dir: str
    downloads_dir: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def is_within_base(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    return os.path.commonpath([real, base]) == base


def build_engine_paths(*, downloads_dir=None, log_dir=None):
    downloads = Path(downloads_dir or DOWNLOADS_DIR)
    logs = Path(log_dir or LOG_DIR)

    # Ensure required directories exist
    for d in (downloads, logs):
        ensure_dir(d)

    return EnginePaths(
        log_dir=str(logs),
        downloads_dir=str(downloads),
    )
