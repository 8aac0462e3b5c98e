import os
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Volume mounts used by the container image.
_CONTAINER_ROOTS = {
    "data": Path("/data"),
    "config": Path("/config"),
    "downloads": Path("/downloads"),
    "logs": Path("/logs"),
}


def _running_in_container():
    return os.path.exists("/.dockerenv") or os.path.isdir("/data")


def _default_roots():
    if _running_in_container():
        return dict(_CONTAINER_ROOTS)
    local = PROJECT_ROOT / "data"
    return {name: local if name == "data" else local / name for name in _CONTAINER_ROOTS}


def _env_path(name, default):
    return Path(os.environ.get(name) or default).resolve()


_ROOTS = _default_roots()

DATA_DIR = _env_path("VIDGRAB_DATA_DIR", _ROOTS["data"])
CONFIG_DIR = _env_path("VIDGRAB_CONFIG_DIR", _ROOTS["config"])
DOWNLOADS_DIR = _env_path("VIDGRAB_DOWNLOADS_DIR", _ROOTS["downloads"])
LOG_DIR = _env_path("VIDGRAB_LOG_DIR", _ROOTS["logs"])
DB_PATH = _env_path("VIDGRAB_DB_PATH", DATA_DIR / "database" / "jobs.sqlite")


@dataclass(frozen=True)
class EnginePaths:
    log_dir: str
    db_path: str
    downloads_dir: str
    temp_downloads_dir: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def _is_within_base(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    return os.path.commonpath([real, base]) == base


def resolve_config_path(path):
    """Absolute path of the JSON config; it must live under ``CONFIG_DIR``."""
    if not path:
        return str(CONFIG_DIR / "config.json")
    resolved = os.path.abspath(os.path.join(CONFIG_DIR, os.path.expanduser(path)))
    if not _is_within_base(resolved, CONFIG_DIR):
        raise ValueError(f"Config path must be within CONFIG_DIR: {CONFIG_DIR}")
    return resolved


def attempt_output_template(downloads_dir, job_id, strategy):
    """yt-dlp output template private to one attempt: ``<downloads>/<job_id>.<strategy>.%(ext)s``."""
    return os.path.join(str(downloads_dir), f"{job_id}.{strategy}.%(ext)s")


def job_output_path(downloads_dir, job_id, ext):
    """Final location of a job's file once an attempt has succeeded."""
    return os.path.join(str(downloads_dir), f"{job_id}{ext}")


def build_engine_paths(*, downloads_dir=None, db_path=None):
    downloads = Path(downloads_dir or DOWNLOADS_DIR)
    db = Path(db_path or DB_PATH)
    temp_downloads_dir = DATA_DIR / "temp_downloads"

    for d in (db.parent, temp_downloads_dir, LOG_DIR, downloads):
        ensure_dir(d)

    return EnginePaths(
        log_dir=str(LOG_DIR),
        db_path=str(db),
        downloads_dir=str(downloads),
        temp_downloads_dir=str(temp_downloads_dir),
    )
