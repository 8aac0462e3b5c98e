"""Download strategies: one mechanism and client profile each.

Every executor honours the same contract (``StrategyExecutor.attempt``): it
downloads into a file private to the attempt, moves it to
``<downloads_dir>/<job_id>.<ext>`` once complete, and converts every internal
failure into an ``AttemptOutcome`` instead of raising.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import sys
import threading
from dataclasses import dataclass

import anyio
from yt_dlp import YoutubeDL

from config.settings import SUBPROCESS_TERMINATE_GRACE_SECONDS
from engine.errors import AttemptFailure, ConfigurationError, JobCancelledError
from engine.formats import (
    AUDIO_CODEC,
    format_selector,
    is_audio_only,
    merge_container,
    permissive_selector,
)
from engine.log_events import log_event
from engine.paths import attempt_output_template, ensure_dir, job_output_path
from engine.progress import (
    PROGRESS_TEMPLATE,
    AttemptOutcome,
    classify_unavailability,
    outcome_for_error,
    parse_progress_line,
    percent_from_hook,
)

logger = logging.getLogger(__name__)

OUTPUT_MARKER = "vidgrab-output:"

CRAWLER_USER_AGENT = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"


def resolve_output_file(path):
    """Return ``path`` when it names a non-empty regular file, else ``None``."""
    if not path:
        return None
    path = str(path).strip()
    if not os.path.isfile(path):
        return None
    try:
        if os.path.getsize(path) <= 0:
            return None
    except OSError:
        return None
    return os.path.abspath(path)


class StrategyExecutor:
    """Base executor. Subclasses implement ``_download`` and return the produced path."""

    name = "base"

    def __init__(self, downloads_dir, *, temp_dir=None, cookie_file=None, socket_timeout=30):
        self.downloads_dir = str(downloads_dir)
        self.temp_dir = str(temp_dir) if temp_dir else None
        self.cookie_file = cookie_file
        self.socket_timeout = socket_timeout

    async def _download(self, job_id, url, requested_format, title, reporter):
        raise NotImplementedError

    def output_template(self, job_id):
        return attempt_output_template(self.downloads_dir, job_id, self.name)

    def _attempt_prefix(self, job_id):
        return f"{job_id}.{self.name}."

    def discard_attempt_files(self, job_id):
        """Remove whatever this executor left behind for ``job_id``."""
        prefix = self._attempt_prefix(job_id)
        try:
            names = os.listdir(self.downloads_dir)
        except OSError:
            return
        for name in names:
            if not name.startswith(prefix):
                continue
            try:
                os.remove(os.path.join(self.downloads_dir, name))
            except OSError as exc:
                logger.warning("could not remove %s: %s", name, exc)

    def _promote(self, job_id, path):
        # Only files written under this attempt's own prefix are moved.
        if not os.path.basename(path).startswith(self._attempt_prefix(job_id)):
            return path
        final = os.path.abspath(job_output_path(self.downloads_dir, job_id, os.path.splitext(path)[1]))
        os.replace(path, final)
        return final

    async def attempt(self, job_id, url, requested_format, title, reporter):
        try:
            ensure_dir(self.downloads_dir)
            produced = await self._download(job_id, url, requested_format, title, reporter)
        except AttemptFailure as exc:
            if exc.fatal:
                return AttemptOutcome.failed_fatally(str(exc))
            return AttemptOutcome.retryable(str(exc))
        except JobCancelledError:
            raise
        except Exception as exc:
            logger.warning("strategy %s raised for job %s: %s", self.name, job_id, exc)
            return outcome_for_error(exc)

        output_file = resolve_output_file(produced)
        if output_file is None:
            log_event(
                logging.WARNING,
                "output_missing",
                job_id=job_id,
                strategy=self.name,
                reported_path=produced,
            )
            return AttemptOutcome.retryable("missing_output_file")
        try:
            output_file = self._promote(job_id, output_file)
        except OSError as exc:
            self.discard_attempt_files(job_id)
            return AttemptOutcome.retryable(f"output_not_moved: {exc}")
        try:
            await reporter.complete(output_file)
        except Exception as exc:
            logger.warning("strategy %s could not record completion for job %s: %s", self.name, job_id, exc)
            return AttemptOutcome.retryable(f"completion_not_recorded: {exc}")
        return AttemptOutcome.succeeded(output_file)


class LibraryStrategy(StrategyExecutor):
    """Embedded yt-dlp run in a worker thread with the default web client."""

    name = "library"

    def build_options(self, job_id, requested_format, progress_hook):
        opts = {
            "format": format_selector(requested_format),
            "outtmpl": self.output_template(job_id),
            "noplaylist": True,
            "quiet": True,
            "no_warnings": True,
            "noprogress": True,
            "retries": 2,
            "fragment_retries": 2,
            "socket_timeout": self.socket_timeout,
            "progress_hooks": [progress_hook],
            "extractor_args": {"youtube": {"player_client": ["web"]}},
        }
        if self.temp_dir:
            opts["paths"] = {"temp": os.path.join(self.temp_dir, job_id)}
        container = merge_container(requested_format)
        if container:
            opts["merge_output_format"] = container
        if is_audio_only(requested_format):
            opts["postprocessors"] = [
                {
                    "key": "FFmpegExtractAudio",
                    "preferredcodec": AUDIO_CODEC,
                    "preferredquality": "192",
                }
            ]
        if self.cookie_file:
            opts["cookiefile"] = self.cookie_file
        return opts

    @staticmethod
    def _downloaded_path(ydl, info):
        if not isinstance(info, dict):
            return None
        requested = info.get("requested_downloads") or []
        for entry in reversed(requested):
            path = entry.get("filepath") if isinstance(entry, dict) else None
            if path:
                return path
        return info.get("filepath") or ydl.prepare_filename(info)

    async def _download(self, job_id, url, requested_format, title, reporter):
        stop = threading.Event()

        def _hook(status):
            if stop.is_set():
                raise JobCancelledError("attempt abandoned")
            percent = percent_from_hook(status)
            if percent is not None:
                anyio.from_thread.run(reporter.progress, percent)

        def _run():
            try:
                with YoutubeDL(self.build_options(job_id, requested_format, _hook)) as ydl:
                    info = ydl.extract_info(url, download=True)
                    path = self._downloaded_path(ydl, info)
            except Exception:
                if stop.is_set():
                    self.discard_attempt_files(job_id)
                raise
            # Merging and post-processing never call the hook, so a timed-out
            # attempt may only notice here.
            if stop.is_set():
                self.discard_attempt_files(job_id)
                raise JobCancelledError("attempt abandoned")
            return path

        try:
            return await anyio.to_thread.run_sync(_run, abandon_on_cancel=True)
        finally:
            stop.set()
            if self.temp_dir:
                shutil.rmtree(os.path.join(self.temp_dir, job_id), ignore_errors=True)


@dataclass(frozen=True)
class ClientProfile:
    player_clients: tuple
    user_agent: str | None = None
    permissive_formats: bool = False
    retries: int = 2
    force_ipv4: bool = False


ANDROID_PROFILE = ClientProfile(player_clients=("android",))
HARDENED_PROFILE = ClientProfile(
    player_clients=("android", "web_creator"),
    user_agent=CRAWLER_USER_AGENT,
    permissive_formats=True,
    retries=5,
    force_ipv4=True,
)


class CliStrategy(StrategyExecutor):
    """yt-dlp CLI subprocess with a client-impersonation profile."""

    def __init__(self, downloads_dir, *, name, profile, ytdlp_path="yt-dlp", **kwargs):
        super().__init__(downloads_dir, **kwargs)
        self.name = name
        self.profile = profile
        self.ytdlp_path = ytdlp_path

    def build_command(self, job_id, url, requested_format):
        profile = self.profile
        selector = (
            permissive_selector(requested_format)
            if profile.permissive_formats
            else format_selector(requested_format)
        )
        argv = [
            self.ytdlp_path,
            "--newline",
            "--no-playlist",
            "--no-warnings",
            "--no-simulate",
            "--progress",
            "--progress-template", PROGRESS_TEMPLATE,
            "--print", f"after_move:{OUTPUT_MARKER}%(filepath)s",
            "--output", self.output_template(job_id),
            "--format", selector,
            "--retries", str(profile.retries),
            "--fragment-retries", str(profile.retries),
            "--socket-timeout", str(self.socket_timeout),
            "--extractor-args", "youtube:player_client=" + ",".join(profile.player_clients),
        ]
        if self.temp_dir:
            argv.extend(["--paths", f"temp:{os.path.join(self.temp_dir, job_id)}"])
        if profile.user_agent:
            argv.extend(["--user-agent", profile.user_agent])
        if profile.force_ipv4:
            argv.append("--force-ipv4")
        container = merge_container(requested_format)
        if container:
            argv.extend(["--merge-output-format", container])
        if is_audio_only(requested_format):
            argv.extend(["-x", "--audio-format", AUDIO_CODEC, "--audio-quality", "192K"])
        if self.cookie_file:
            argv.extend(["--cookies", self.cookie_file])
        argv.extend(["--", url])
        return argv

    async def _spawn(self, argv):
        kwargs = {}
        if sys.platform != "win32":
            kwargs["start_new_session"] = True
        return await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            **kwargs,
        )

    @staticmethod
    async def _terminate(process):
        if process.returncode is not None:
            return
        try:
            if sys.platform != "win32":
                os.killpg(os.getpgid(process.pid), signal.SIGTERM)
            else:
                process.terminate()
            await asyncio.wait_for(process.wait(), timeout=SUBPROCESS_TERMINATE_GRACE_SECONDS)
        except (asyncio.TimeoutError, ProcessLookupError, OSError):
            try:
                process.kill()
            except (ProcessLookupError, OSError):
                pass

    async def _download(self, job_id, url, requested_format, title, reporter):
        argv = self.build_command(job_id, url, requested_format)
        try:
            process = await self._spawn(argv)
        except FileNotFoundError as exc:
            raise AttemptFailure(f"ytdlp_cli_not_found: {self.ytdlp_path}") from exc

        produced = []
        errors = []

        async def _read_stdout():
            while True:
                raw = await process.stdout.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", "replace").strip()
                if line.startswith(OUTPUT_MARKER):
                    produced.append(line[len(OUTPUT_MARKER):].strip())
                    continue
                parsed = parse_progress_line(line)
                if parsed is not None:
                    await reporter.progress(parsed["progress_percent"])

        async def _read_stderr():
            while True:
                raw = await process.stderr.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", "replace").strip()
                logger.debug("[%s:%s] %s", self.name, job_id, line)
                parsed = parse_progress_line(line)
                if parsed is not None:
                    await reporter.progress(parsed["progress_percent"])
                elif line.startswith("ERROR:"):
                    errors.append(line[6:].strip())

        try:
            await asyncio.gather(_read_stdout(), _read_stderr())
            return_code = await process.wait()
        except BaseException:
            await self._terminate(process)
            self.discard_attempt_files(job_id)
            raise
        finally:
            if self.temp_dir:
                shutil.rmtree(os.path.join(self.temp_dir, job_id), ignore_errors=True)

        if return_code != 0:
            message = errors[-1] if errors else f"yt-dlp exited with code {return_code}"
            raise AttemptFailure(message, fatal=classify_unavailability(message) is not None)
        if not produced:
            return None
        return produced[-1]


@dataclass(frozen=True)
class StrategyDescriptor:
    name: str
    executor: StrategyExecutor
    rank: int


def _strategy_factories():
    return {
        "library": lambda downloads_dir, ytdlp_path, **kw: LibraryStrategy(downloads_dir, **kw),
        "cli-android": lambda downloads_dir, ytdlp_path, **kw: CliStrategy(
            downloads_dir, name="cli-android", profile=ANDROID_PROFILE, ytdlp_path=ytdlp_path, **kw
        ),
        "cli-hardened": lambda downloads_dir, ytdlp_path, **kw: CliStrategy(
            downloads_dir, name="cli-hardened", profile=HARDENED_PROFILE, ytdlp_path=ytdlp_path, **kw
        ),
    }


def build_strategies(runtime_config, paths):
    """Descriptors for the configured strategy names, ranked by configured order."""
    factories = _strategy_factories()
    descriptors = []
    for rank, name in enumerate(runtime_config.strategies):
        factory = factories.get(name)
        if factory is None:
            raise ConfigurationError(f"Unknown strategy: {name}", [f"unknown strategy '{name}'"])
        executor = factory(
            paths.downloads_dir,
            runtime_config.ytdlp_path,
            temp_dir=paths.temp_downloads_dir,
            cookie_file=runtime_config.cookie_file,
            socket_timeout=runtime_config.socket_timeout,
        )
        descriptors.append(StrategyDescriptor(name=name, executor=executor, rank=rank))
    return descriptors
