from __future__ import annotations

import time

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from engine.errors import ExtractionError
from engine.jobs import build_job_service
from engine.paths import resolve_config_path

CONFIG = {"source_url_pattern": r"^https?://example\.com/", "retry_delay_seconds": 0}


def _wait_terminal(client: TestClient, job_id: str) -> dict:
    for _ in range(200):
        body = client.get(f"/api/download/{job_id}").json()
        if body["status"] in ("completed", "failed"):
            return body
        time.sleep(0.01)
    raise AssertionError(f"job {job_id} never finished: {body}")


@pytest.fixture
def build_client(engine_paths, sleep_recorder):
    from api.main import create_app

    def factory(strategies):
        def service_builder(config, paths):
            return build_job_service(config, paths=paths, strategies=strategies, sleep=sleep_recorder)

        app = create_app(config=CONFIG, paths=engine_paths, service_builder=service_builder)
        return TestClient(app)

    return factory


def test_download_lifecycle_over_http(build_client, make_strategy) -> None:
    strategies = [make_strategy("first", error="HTTP Error 403"), make_strategy("second", progress=(40,))]

    with build_client(strategies) as client:
        response = client.post(
            "/api/download",
            json={
                "sourceUrl": "https://example.com/watch?v=abc",
                "title": "Clip One",
                "channel": "Someone",
                "format": "mp4-720p",
            },
        )
        assert response.status_code == 202
        created = response.json()
        assert created["status"] == "pending"
        assert created["progress"] == 0
        assert created["format"] == "best-mp4-720p"
        assert created["outputLocation"] is None

        final = _wait_terminal(client, created["id"])
        assert final["status"] == "completed"
        assert final["progress"] == 100
        assert final["strategy"] == "second"
        assert final["outputLocation"].endswith(f"{created['id']}.mp4")

        listed = client.get("/api/downloads").json()
        assert [item["id"] for item in listed] == [created["id"]]

        file_response = client.get(f"/api/download/{created['id']}/file")
        assert file_response.status_code == 200
        assert file_response.content == b"media-bytes"
        assert file_response.headers["content-disposition"] == 'attachment; filename="Clip One.mp4"'


def test_youtube_url_alias_is_accepted(build_client, make_strategy) -> None:
    with build_client([make_strategy("only")]) as client:
        response = client.post(
            "/api/download",
            json={"youtubeUrl": "https://example.com/watch?v=xyz", "title": "Alias"},
        )
        assert response.status_code == 202
        assert response.json()["sourceUrl"] == "https://example.com/watch?v=xyz"
        assert response.json()["format"] == "best-mp4"


def test_non_ascii_title_gets_encoded_filename(build_client, make_strategy) -> None:
    with build_client([make_strategy("only")]) as client:
        created = client.post(
            "/api/download",
            json={"sourceUrl": "https://example.com/watch?v=abc", "title": "Café ünïcode"},
        ).json()
        _wait_terminal(client, created["id"])

        response = client.get(f"/api/download/{created['id']}/file")

    disposition = response.headers["content-disposition"]
    assert disposition.startswith('attachment; filename="Caf ncode.mp4"')
    assert "filename*=UTF-8''Caf%C3%A9%20%C3%BCn%C3%AFcode.mp4" in disposition


@pytest.mark.parametrize(
    "payload,message",
    [
        ({}, "sourceUrl is required"),
        ({"sourceUrl": "not a url"}, "Please enter a valid URL"),
        ({"sourceUrl": "https://other.org/watch?v=abc"}, "URL is not from a supported site"),
        ({"sourceUrl": "https://example.com/watch?v=abc", "format": "8k"}, "Unsupported format: 8k"),
    ],
)
def test_invalid_submissions_return_400(build_client, make_strategy, payload, message) -> None:
    with build_client([make_strategy("only")]) as client:
        response = client.post("/api/download", json=payload)
        listed = client.get("/api/downloads").json()

    assert response.status_code == 400
    assert response.json() == {"message": message}
    assert listed == []


def test_malformed_body_returns_400_message(build_client, make_strategy) -> None:
    with build_client([make_strategy("only")]) as client:
        response = client.post("/api/download", json={"sourceUrl": ["a", "b"]})

    assert response.status_code == 400
    assert "sourceUrl" in response.json()["message"]


def test_unknown_download_id_returns_404(build_client, make_strategy) -> None:
    with build_client([make_strategy("only")]) as client:
        status = client.get("/api/download/nope")
        file_response = client.get("/api/download/nope/file")
        cancel = client.post("/api/download/nope/cancel")

    assert status.status_code == 404
    assert status.json() == {"message": "Download not found: nope"}
    assert file_response.status_code == 404
    assert cancel.status_code == 404


def test_file_of_failed_job_returns_404(build_client, make_strategy) -> None:
    with build_client([make_strategy("broken", error="nope")]) as client:
        created = client.post(
            "/api/download",
            json={"sourceUrl": "https://example.com/watch?v=abc", "title": "abc"},
        ).json()
        final = _wait_terminal(client, created["id"])
        response = client.get(f"/api/download/{created['id']}/file")

    assert final["status"] == "failed"
    assert final["lastError"] == "broken: nope"
    assert response.status_code == 404
    assert "message" in response.json()


def test_cancel_endpoint_fails_running_job(build_client, make_strategy) -> None:
    with build_client([make_strategy("hung", hang=True)]) as client:
        created = client.post(
            "/api/download",
            json={"sourceUrl": "https://example.com/watch?v=abc", "title": "abc"},
        ).json()
        response = client.post(f"/api/download/{created['id']}/cancel")

    assert response.status_code == 200
    assert response.json()["status"] == "failed"
    assert response.json()["lastError"] == "cancelled"


def test_analyze_returns_metadata(build_client, make_strategy, monkeypatch) -> None:
    seen = {}

    def fake_analyze(url, config):
        seen["url"] = url
        seen["config"] = config
        return {"title": "Clip", "formats": []}

    monkeypatch.setattr("api.main.analyze_url", fake_analyze)

    with build_client([make_strategy("only")]) as client:
        response = client.post("/api/analyze", json={"url": " https://example.com/watch?v=abc123 "})

    assert response.status_code == 200
    assert response.json() == {"title": "Clip", "formats": []}
    assert seen["url"] == "https://example.com/watch?v=abc123"
    assert seen["config"]["source_url_pattern"] == CONFIG["source_url_pattern"]


def test_analyze_failure_returns_400(build_client, make_strategy, monkeypatch) -> None:
    def fake_analyze(url, config):
        raise ExtractionError("Failed to analyze video. Please check the URL and try again.")

    monkeypatch.setattr("api.main.analyze_url", fake_analyze)

    with build_client([make_strategy("only")]) as client:
        response = client.post("/api/analyze", json={"url": "https://example.com/watch?v=gone"})
        empty = client.post("/api/analyze", json={"url": "  "})

    assert response.status_code == 400
    assert response.json() == {"message": "Failed to analyze video. Please check the URL and try again."}
    assert empty.status_code == 400


@pytest.mark.parametrize(
    "url,message",
    [
        ("http://169.254.169.254/latest/meta-data/", "URL is not from a supported site"),
        ("file:///etc/passwd", "Please enter a valid URL"),
    ],
)
def test_analyze_rejects_unsupported_urls_before_fetching(
    build_client, make_strategy, monkeypatch, url, message
) -> None:
    calls = []

    def fake_analyze(url, config):
        calls.append(url)
        return {"title": "should not happen"}

    monkeypatch.setattr("api.main.analyze_url", fake_analyze)

    with build_client([make_strategy("only")]) as client:
        response = client.post("/api/analyze", json={"url": url})

    assert response.status_code == 400
    assert response.json() == {"message": message}
    assert calls == []


def test_config_override_outside_config_dir_falls_back(engine_paths, make_strategy, monkeypatch) -> None:
    from api.main import create_app

    loaded = []
    monkeypatch.setenv("VIDGRAB_CONFIG", "../../outside.json")
    monkeypatch.setattr("api.main.load_config", lambda path: loaded.append(path) or {})

    def service_builder(config, paths):
        return build_job_service(config, paths=paths, strategies=[make_strategy("only")])

    with TestClient(create_app(paths=engine_paths, service_builder=service_builder)) as client:
        assert client.get("/api/downloads").json() == []

    assert loaded == [resolve_config_path(None)]


def test_version_reports_runtime(build_client, make_strategy) -> None:
    with build_client([make_strategy("only")]) as client:
        body = client.get("/api/version").json()

    assert {"app_version", "python_version", "yt_dlp_version"} <= set(body)
