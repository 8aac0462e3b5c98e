"""Requested download formats and their yt-dlp format selectors."""

from __future__ import annotations

from engine.errors import ValidationError

FORMAT_MP4_1080P = "best-mp4-1080p"
FORMAT_MP4_720P = "best-mp4-720p"
FORMAT_MP4_480P = "best-mp4-480p"
FORMAT_MP4 = "best-mp4"
FORMAT_AUDIO_ONLY = "audio-only"
FORMAT_WEBM = "webm"

REQUESTED_FORMATS = (
    FORMAT_MP4_1080P,
    FORMAT_MP4_720P,
    FORMAT_MP4_480P,
    FORMAT_MP4,
    FORMAT_AUDIO_ONLY,
    FORMAT_WEBM,
)

DEFAULT_FORMAT = FORMAT_MP4

# Values sent by the polling web client.
_FORMAT_ALIASES = {
    "mp4-1080p": FORMAT_MP4_1080P,
    "mp4-720p": FORMAT_MP4_720P,
    "mp4-480p": FORMAT_MP4_480P,
    "mp4": FORMAT_MP4,
    "mp3": FORMAT_AUDIO_ONLY,
    "audio": FORMAT_AUDIO_ONLY,
}

_HEIGHT_LIMITS = {
    FORMAT_MP4_1080P: 1080,
    FORMAT_MP4_720P: 720,
    FORMAT_MP4_480P: 480,
}

AUDIO_CODEC = "mp3"


def normalize_format(value: str | None) -> str:
    """Return the canonical format name for ``value`` or raise ``ValidationError``."""
    if value is None or not str(value).strip():
        return DEFAULT_FORMAT
    raw = str(value).strip().lower()
    if raw in REQUESTED_FORMATS:
        return raw
    if raw in _FORMAT_ALIASES:
        return _FORMAT_ALIASES[raw]
    raise ValidationError(f"Unsupported format: {value}")


def is_audio_only(requested_format: str) -> bool:
    return requested_format == FORMAT_AUDIO_ONLY


def merge_container(requested_format: str) -> str | None:
    if requested_format == FORMAT_WEBM:
        return "webm"
    if is_audio_only(requested_format):
        return None
    return "mp4"


def format_selector(requested_format: str) -> str:
    height = _HEIGHT_LIMITS.get(requested_format)
    if height is not None:
        return (
            f"bestvideo[ext=mp4][height<={height}]+bestaudio[ext=m4a]/"
            f"best[ext=mp4][height<={height}]/"
            f"best[height<={height}]"
        )
    if requested_format == FORMAT_MP4:
        return "bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best"
    if requested_format == FORMAT_WEBM:
        return "bestvideo[ext=webm]+bestaudio[ext=webm]/best[ext=webm]/best"
    if requested_format == FORMAT_AUDIO_ONLY:
        return "bestaudio[ext=m4a]/bestaudio/best"
    raise ValidationError(f"Unsupported format: {requested_format}")


def permissive_selector(requested_format: str) -> str:
    """Selector that accepts any stream once the preferred ones are exhausted."""
    if is_audio_only(requested_format):
        return f"{format_selector(requested_format)}/worstaudio/worst"
    return f"{format_selector(requested_format)}/worst[ext=mp4]/worst/bestaudio"
