"""Metadata extraction for the analyze endpoint.

``analyze_url`` is blocking (yt-dlp network I/O); the API runs it in a worker
thread.
"""

import logging
import math
import re
import urllib.parse
from datetime import datetime, timezone

import requests
from yt_dlp import YoutubeDL

from config.settings import ANALYZE_FORMAT_LIMIT, DEFAULT_SOCKET_TIMEOUT_SECONDS
from engine.errors import ExtractionError
from engine.log_events import log_event

logger = logging.getLogger(__name__)

_OEMBED_URL = "https://www.youtube.com/oembed"
_ANALYZE_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def extract_video_id(url):
    if not url:
        return None
    if "youtube.com" in url:
        match = re.search(r"v=([a-zA-Z0-9_-]{6,})", url)
        if match:
            return match.group(1)
        match = re.search(r"/shorts/([a-zA-Z0-9_-]{6,})", url)
        if match:
            return match.group(1)
    if "youtu.be" in url:
        parsed = urllib.parse.urlparse(url)
        if parsed.path:
            return parsed.path.lstrip("/").split("/")[0]
    return None


def format_file_size(num_bytes):
    if num_bytes is None:
        return "Unknown size"
    num_bytes = int(num_bytes)
    if num_bytes <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    index = 0
    while index < len(units) - 1 and num_bytes >= 1024 ** (index + 1):
        index += 1
    value = round(num_bytes / (1024 ** index), 2)
    return f"{value:g} {units[index]}"


def format_relative_date(upload_date, *, now=None):
    """Turn a ``YYYYMMDD`` upload date into "N days/months/years ago"."""
    if not upload_date:
        return "Unknown"
    raw = str(upload_date)
    if len(raw) != 8 or not raw.isdigit():
        return raw
    try:
        published = datetime.strptime(raw, "%Y%m%d").replace(tzinfo=timezone.utc)
    except ValueError:
        return raw
    now = now or datetime.now(timezone.utc)
    diff_days = math.ceil(abs((now - published).total_seconds()) / 86400)
    if diff_days < 30:
        return f"{diff_days} days ago"
    if diff_days < 365:
        months = diff_days // 30
        return f"{months} month{'s' if months > 1 else ''} ago"
    years = diff_days // 365
    return f"{years} year{'s' if years > 1 else ''} ago"


def format_view_count(value):
    if value is None:
        return "Unknown"
    try:
        return f"{int(value):,}"
    except (TypeError, ValueError):
        return "Unknown"


def summarize_formats(formats, limit=ANALYZE_FORMAT_LIMIT):
    summary = []
    for fmt in formats or []:
        if not isinstance(fmt, dict):
            continue
        ext = fmt.get("ext")
        has_audio = fmt.get("acodec") != "none"
        if ext not in ("mp4", "webm") and not has_audio:
            continue
        height = fmt.get("height")
        size = fmt.get("filesize") or fmt.get("filesize_approx")
        summary.append(
            {
                "container": ext,
                "qualityLabel": f"{height}p" if height else "Audio only",
                "sizeLabel": format_file_size(size) if size else "Unknown size",
            }
        )
        if len(summary) >= limit:
            break
    return summary


def build_analysis(info, *, now=None):
    if not isinstance(info, dict):
        raise ExtractionError("No video information returned")
    return {
        "title": info.get("title") or "Unknown Title",
        "durationLabel": info.get("duration_string") or "Unknown",
        "thumbnailUrl": info.get("thumbnail") or "",
        "channelName": info.get("uploader") or info.get("channel") or "Unknown Channel",
        "viewCountLabel": format_view_count(info.get("view_count")),
        "publishDateLabel": format_relative_date(info.get("upload_date"), now=now),
        "formats": summarize_formats(info.get("formats")),
    }


def _youtube_oembed_fallback(url):
    video_id = extract_video_id(url)
    if not video_id:
        return None
    candidate_urls = [url, f"https://www.youtube.com/watch?v={video_id}"]
    for candidate_url in dict.fromkeys(candidate_urls):
        try:
            resp = requests.get(
                _OEMBED_URL,
                params={"url": candidate_url, "format": "json"},
                timeout=5,
            )
        except requests.RequestException:
            continue
        if not resp.ok:
            continue
        try:
            data = resp.json()
        except ValueError:
            continue
        if not isinstance(data, dict) or not data.get("title"):
            continue
        return {
            "title": str(data.get("title")).strip(),
            "durationLabel": "Unknown",
            "thumbnailUrl": str(data.get("thumbnail_url") or "")
            or f"https://i.ytimg.com/vi/{video_id}/hqdefault.jpg",
            "channelName": str(data.get("author_name") or "").strip() or "Unknown Channel",
            "viewCountLabel": "Unknown",
            "publishDateLabel": "Unknown",
            "formats": [],
        }
    return None


def analyze_url(url, config=None):
    """Extract display metadata for ``url`` or raise ``ExtractionError``."""
    config = config or {}
    opts = {
        "quiet": True,
        "no_warnings": True,
        "skip_download": True,
        "noplaylist": True,
        "retries": 2,
        "socket_timeout": config.get("socket_timeout") or DEFAULT_SOCKET_TIMEOUT_SECONDS,
        "http_headers": {
            "User-Agent": _ANALYZE_USER_AGENT,
            "Accept-Language": "en-US,en;q=0.9",
        },
        "extractor_args": {"youtube": {"player_client": ["web"]}},
    }
    if config.get("cookie_file"):
        opts["cookiefile"] = config["cookie_file"]

    try:
        with YoutubeDL(opts) as ydl:
            info = ydl.extract_info(url, download=False)
        return build_analysis(info)
    except Exception as exc:
        fallback = _youtube_oembed_fallback(url)
        log_event(
            logging.INFO if fallback else logging.WARNING,
            "analyze_fallback_used" if fallback else "analyze_failed",
            url=url,
            error=str(exc),
        )
        if fallback:
            return fallback
        raise ExtractionError("Failed to analyze video. Please check the URL and try again.") from exc
