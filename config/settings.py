"""Application settings constants."""

from __future__ import annotations

# Strategy names in priority order: cheap native-library path first,
# most defensive subprocess profile last.
DEFAULT_STRATEGY_ORDER = ("library", "cli-android", "cli-hardened")

# Fixed pause between two strategy attempts of the same job.
DEFAULT_RETRY_DELAY_SECONDS = 2.0

# Upper bound for a single strategy attempt; expiry counts as a failed attempt.
DEFAULT_ATTEMPT_TIMEOUT_SECONDS = 900.0

# Network timeout handed to yt-dlp.
DEFAULT_SOCKET_TIMEOUT_SECONDS = 30

# Grace period between SIGTERM and SIGKILL when stopping a yt-dlp process.
SUBPROCESS_TERMINATE_GRACE_SECONDS = 3.0

DEFAULT_YTDLP_PATH = "yt-dlp"

# "memory" or "sqlite".
DEFAULT_STORE_BACKEND = "memory"

# Accepted source sites for submissions.
DEFAULT_SOURCE_URL_PATTERN = (
    r"^https?://(?:www\.|m\.|music\.)?"
    r"(?:youtube\.com/(?:watch\?|shorts/)|youtu\.be/)"
)

ANALYZE_FORMAT_LIMIT = 5
