import asyncio
import sys
from pathlib import Path

import pytest


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from engine.errors import AttemptFailure  # noqa: E402
from engine.paths import EnginePaths  # noqa: E402
from engine.strategies import StrategyExecutor  # noqa: E402


class FakeStrategy(StrategyExecutor):
    """Scripted executor: optional progress steps, then fail, hang or write a file."""

    def __init__(
        self,
        downloads_dir,
        name,
        *,
        output=None,
        error=None,
        fatal=False,
        hang=False,
        progress=(),
        fail_urls=(),
    ):
        super().__init__(downloads_dir)
        self.name = name
        self.output = output
        self.error = error
        self.fatal = fatal
        self.hang = hang
        self.progress_steps = tuple(progress)
        self.fail_urls = set(fail_urls)
        self.calls = []

    async def _download(self, job_id, url, requested_format, title, reporter):
        self.calls.append((job_id, url, requested_format))
        for percent in self.progress_steps:
            await reporter.progress(percent)
            await asyncio.sleep(0)
        if self.hang:
            await asyncio.Event().wait()
        if self.error or url in self.fail_urls:
            raise AttemptFailure(self.error or f"{self.name} failed", fatal=self.fatal)
        filename = self.output or f"{job_id}.mp4"
        path = Path(self.downloads_dir) / filename
        path.write_bytes(b"media-bytes")
        return str(path)


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def engine_paths(tmp_path) -> EnginePaths:
    dirs = {
        "log_dir": tmp_path / "logs",
        "downloads_dir": tmp_path / "downloads",
        "temp_downloads_dir": tmp_path / "temp_downloads",
    }
    for path in dirs.values():
        path.mkdir(parents=True, exist_ok=True)
    (tmp_path / "database").mkdir(exist_ok=True)
    return EnginePaths(
        log_dir=str(dirs["log_dir"]),
        db_path=str(tmp_path / "database" / "jobs.sqlite"),
        downloads_dir=str(dirs["downloads_dir"]),
        temp_downloads_dir=str(dirs["temp_downloads_dir"]),
    )


@pytest.fixture
def make_strategy(engine_paths):
    def factory(name, **kwargs):
        return FakeStrategy(engine_paths.downloads_dir, name, **kwargs)

    return factory


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()
