from __future__ import annotations

from datetime import datetime, timezone

import pytest

from engine import analyzer
from engine.analyzer import (
    analyze_url,
    build_analysis,
    extract_video_id,
    format_file_size,
    format_relative_date,
    format_view_count,
    summarize_formats,
)
from engine.errors import ExtractionError

NOW = datetime(2024, 6, 30, tzinfo=timezone.utc)


def test_extract_video_id_variants() -> None:
    assert extract_video_id("https://www.youtube.com/watch?v=dQw4w9WgXcQ&t=1") == "dQw4w9WgXcQ"
    assert extract_video_id("https://youtube.com/shorts/abcdef123") == "abcdef123"
    assert extract_video_id("https://youtu.be/dQw4w9WgXcQ?si=x") == "dQw4w9WgXcQ"
    assert extract_video_id("https://example.com/watch?v=abc") is None
    assert extract_video_id("") is None


def test_format_file_size_labels() -> None:
    assert format_file_size(None) == "Unknown size"
    assert format_file_size(0) == "0 Bytes"
    assert format_file_size(512) == "512 Bytes"
    assert format_file_size(1536) == "1.5 KB"
    assert format_file_size(10 * 1024 * 1024) == "10 MB"
    assert format_file_size(int(2.25 * 1024 ** 3)) == "2.25 GB"


def test_format_relative_date_buckets() -> None:
    assert format_relative_date("20240620", now=NOW) == "10 days ago"
    assert format_relative_date("20240501", now=NOW) == "2 months ago"
    assert format_relative_date("20240515", now=NOW) == "1 month ago"
    assert format_relative_date("20220101", now=NOW) == "2 years ago"
    assert format_relative_date(None, now=NOW) == "Unknown"
    assert format_relative_date("last week", now=NOW) == "last week"


def test_format_view_count() -> None:
    assert format_view_count(1234567) == "1,234,567"
    assert format_view_count(None) == "Unknown"
    assert format_view_count("many") == "Unknown"


def test_summarize_formats_keeps_first_five_usable() -> None:
    formats = [{"ext": "mhtml", "acodec": "none"}]
    formats += [{"ext": "mp4", "height": h, "filesize": 1024 * 1024 * h} for h in (144, 240, 360, 480, 720, 1080)]
    formats.insert(1, {"ext": "m4a", "acodec": "mp4a.40.2", "filesize_approx": 2048})

    summary = summarize_formats(formats)

    assert len(summary) == 5
    assert summary[0] == {"container": "m4a", "qualityLabel": "Audio only", "sizeLabel": "2 KB"}
    assert summary[1] == {"container": "mp4", "qualityLabel": "144p", "sizeLabel": "144 MB"}
    assert summary[-1]["qualityLabel"] == "480p"


def test_summarize_formats_keeps_entries_without_acodec() -> None:
    formats = [
        {"ext": "m4a", "filesize": 4096},
        {"ext": "3gp", "acodec": None, "height": 144},
        {"ext": "mhtml", "acodec": "none"},
    ]

    summary = summarize_formats(formats)

    assert [entry["container"] for entry in summary] == ["m4a", "3gp"]
    assert summary[0]["qualityLabel"] == "Audio only"


def test_build_analysis_maps_info_fields() -> None:
    info = {
        "title": "A clip",
        "duration_string": "3:32",
        "thumbnail": "https://i.ytimg.com/vi/abc/hq.jpg",
        "uploader": "Someone",
        "view_count": 1500,
        "upload_date": "20240620",
        "formats": [{"ext": "webm", "height": 720}],
    }

    result = build_analysis(info, now=NOW)

    assert result == {
        "title": "A clip",
        "durationLabel": "3:32",
        "thumbnailUrl": "https://i.ytimg.com/vi/abc/hq.jpg",
        "channelName": "Someone",
        "viewCountLabel": "1,500",
        "publishDateLabel": "10 days ago",
        "formats": [{"container": "webm", "qualityLabel": "720p", "sizeLabel": "Unknown size"}],
    }


def test_build_analysis_defaults_for_sparse_info() -> None:
    result = build_analysis({}, now=NOW)

    assert result["title"] == "Unknown Title"
    assert result["channelName"] == "Unknown Channel"
    assert result["formats"] == []
    with pytest.raises(ExtractionError):
        build_analysis(None)


class _FailingYoutubeDL:
    def __init__(self, opts):
        self.opts = opts

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def extract_info(self, url, download):
        raise RuntimeError("Sign in to confirm you're not a bot")


class _Response:
    ok = True

    def json(self):
        return {"title": "Fallback title", "author_name": "Channel", "thumbnail_url": "https://thumb"}


def test_analyze_url_falls_back_to_oembed(monkeypatch) -> None:
    requested = []

    def fake_get(url, params, timeout):
        requested.append(params["url"])
        return _Response()

    monkeypatch.setattr(analyzer, "YoutubeDL", _FailingYoutubeDL)
    monkeypatch.setattr(analyzer.requests, "get", fake_get)

    result = analyze_url("https://youtu.be/dQw4w9WgXcQ")

    assert result["title"] == "Fallback title"
    assert result["channelName"] == "Channel"
    assert result["formats"] == []
    assert requested == ["https://youtu.be/dQw4w9WgXcQ"]


def test_analyze_url_raises_when_nothing_resolves(monkeypatch) -> None:
    monkeypatch.setattr(analyzer, "YoutubeDL", _FailingYoutubeDL)

    with pytest.raises(ExtractionError, match="Failed to analyze video"):
        analyze_url("https://example.com/watch?v=abc")


def test_analyze_url_passes_cookie_and_timeout(monkeypatch) -> None:
    captured = {}

    class _RecordingYoutubeDL(_FailingYoutubeDL):
        def extract_info(self, url, download):
            captured.update(self.opts)
            captured["download"] = download
            return {"title": "Clip"}

    monkeypatch.setattr(analyzer, "YoutubeDL", _RecordingYoutubeDL)

    result = analyze_url("https://www.youtube.com/watch?v=abc123", {"cookie_file": "/c.txt", "socket_timeout": 7})

    assert result["title"] == "Clip"
    assert captured["cookiefile"] == "/c.txt"
    assert captured["socket_timeout"] == 7
    assert captured["download"] is False
