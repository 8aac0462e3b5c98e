"""Optional JSON configuration file and the runtime settings derived from it."""

import json
import os
import re
from dataclasses import dataclass

from config.settings import (
    DEFAULT_ATTEMPT_TIMEOUT_SECONDS,
    DEFAULT_RETRY_DELAY_SECONDS,
    DEFAULT_SOCKET_TIMEOUT_SECONDS,
    DEFAULT_SOURCE_URL_PATTERN,
    DEFAULT_STORE_BACKEND,
    DEFAULT_STRATEGY_ORDER,
    DEFAULT_YTDLP_PATH,
)
from engine.errors import ConfigurationError

STORE_BACKENDS = {"memory", "sqlite"}


@dataclass(frozen=True)
class RuntimeConfig:
    strategies: tuple
    attempt_timeout_seconds: float
    retry_delay_seconds: float
    store: str
    ytdlp_path: str
    cookie_file: str | None
    source_url_pattern: str
    socket_timeout: int


def load_config(path):
    """Read ``path`` as JSON; a missing file yields an empty config."""
    if not path or not os.path.exists(path):
        return {}
    with open(path, "r") as f:
        return json.load(f)


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_config(config, *, known_strategies=DEFAULT_STRATEGY_ORDER):
    errors = []
    if not isinstance(config, dict):
        return ["config must be a JSON object"]

    strategies = config.get("strategies")
    if strategies is not None:
        if not isinstance(strategies, list):
            errors.append("strategies must be a list")
        elif not strategies:
            errors.append("strategies must not be empty")
        else:
            seen = set()
            for idx, name in enumerate(strategies):
                if not isinstance(name, str) or name not in known_strategies:
                    errors.append(f"strategies[{idx}] must be one of {', '.join(known_strategies)}")
                elif name in seen:
                    errors.append(f"strategies[{idx}] duplicates '{name}'")
                else:
                    seen.add(name)

    timeout = config.get("attempt_timeout_seconds")
    if timeout is not None and (not _is_number(timeout) or timeout <= 0):
        errors.append("attempt_timeout_seconds must be a positive number")

    delay = config.get("retry_delay_seconds")
    if delay is not None and (not _is_number(delay) or delay < 0):
        errors.append("retry_delay_seconds must be a non-negative number")

    socket_timeout = config.get("socket_timeout")
    if socket_timeout is not None and (not _is_number(socket_timeout) or socket_timeout <= 0):
        errors.append("socket_timeout must be a positive number")

    store = config.get("store")
    if store is not None and store not in STORE_BACKENDS:
        errors.append("store must be 'memory' or 'sqlite'")

    for key in ("ytdlp_path", "cookie_file"):
        value = config.get(key)
        if value is not None and (not isinstance(value, str) or not value.strip()):
            errors.append(f"{key} must be a non-empty string")

    pattern = config.get("source_url_pattern")
    if pattern is not None:
        if not isinstance(pattern, str):
            errors.append("source_url_pattern must be a string")
        else:
            try:
                re.compile(pattern)
            except re.error as exc:
                errors.append(f"source_url_pattern is not a valid regex: {exc}")

    return errors


def build_runtime_config(config=None):
    """Validate ``config`` and merge it over the defaults.

    Raises ``ConfigurationError`` carrying every validation problem.
    """
    config = config or {}
    errors = validate_config(config)
    if errors:
        raise ConfigurationError("Invalid configuration: " + "; ".join(errors), errors)
    return RuntimeConfig(
        strategies=tuple(config.get("strategies") or DEFAULT_STRATEGY_ORDER),
        attempt_timeout_seconds=float(config.get("attempt_timeout_seconds", DEFAULT_ATTEMPT_TIMEOUT_SECONDS)),
        retry_delay_seconds=float(config.get("retry_delay_seconds", DEFAULT_RETRY_DELAY_SECONDS)),
        store=config.get("store") or DEFAULT_STORE_BACKEND,
        ytdlp_path=config.get("ytdlp_path") or DEFAULT_YTDLP_PATH,
        cookie_file=config.get("cookie_file"),
        source_url_pattern=config.get("source_url_pattern") or DEFAULT_SOURCE_URL_PATTERN,
        socket_timeout=int(config.get("socket_timeout", DEFAULT_SOCKET_TIMEOUT_SECONDS)),
    )
