import os
import shutil
import sys

from yt_dlp.version import __version__ as ytdlp_version


def get_runtime_info(ytdlp_path="yt-dlp"):
    """Versions and external tool availability reported by ``/api/version``."""
    return {
        "app_version": os.environ.get("VIDGRAB_VERSION", "0.1.0"),
        "python_version": sys.version.split()[0],
        "yt_dlp_version": ytdlp_version,
        "yt_dlp_cli": shutil.which(ytdlp_path),
        "ffmpeg": shutil.which("ffmpeg"),
    }
