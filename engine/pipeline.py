"""Drives one job through the ordered strategy list to a terminal state."""

from __future__ import annotations

import asyncio
import logging

from engine.errors import (
    ConfigurationError,
    ExhaustionFailure,
    InvalidTransitionError,
    JobCancelledError,
)
from engine.job_store import (
    JOB_STATUS_DOWNLOADING,
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
)
from engine.log_events import log_event
from engine.progress import AttemptOutcome, AttemptReporter
from engine.strategies import StrategyDescriptor

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"


def _as_descriptors(strategies):
    descriptors = []
    for index, item in enumerate(strategies):
        if isinstance(item, StrategyDescriptor):
            descriptors.append(item)
        else:
            descriptors.append(StrategyDescriptor(name=item.name, executor=item, rank=index))
    return sorted(descriptors, key=lambda d: d.rank)


class StrategyPipeline:
    def __init__(
        self,
        store,
        strategies,
        *,
        retry_delay_seconds=2.0,
        attempt_timeout_seconds=900.0,
        sleep=asyncio.sleep,
    ):
        if not strategies:
            raise ConfigurationError(
                "At least one download strategy must be configured",
                ["strategies must not be empty"],
            )
        self.store = store
        self.strategies = _as_descriptors(strategies)
        self.retry_delay_seconds = retry_delay_seconds
        self.attempt_timeout_seconds = attempt_timeout_seconds
        self._sleep = sleep

    @property
    def strategy_names(self):
        return [d.name for d in self.strategies]

    async def run(self, job_id, url, requested_format, title, *, cancel_event=None):
        """Run every strategy in order until one succeeds; return the final record."""
        try:
            return await self._drive(job_id, url, requested_format, title, cancel_event)
        except ExhaustionFailure as exc:
            log_event(logging.WARNING, "job_exhausted", job_id=job_id, last_error=str(exc))
            return await self._mark_failed(job_id, str(exc))
        except JobCancelledError:
            log_event(logging.INFO, "job_cancelled", job_id=job_id)
            return await self._mark_failed(job_id, CANCELLED_REASON)
        except asyncio.CancelledError:
            log_event(logging.WARNING, "job_cancelled", job_id=job_id, reason="shutdown")
            await self._mark_failed(job_id, CANCELLED_REASON)
            raise
        except Exception as exc:
            logger.exception("Download pipeline error job_id=%s", job_id)
            return await self._mark_failed(job_id, f"pipeline_error: {exc}")

    async def _drive(self, job_id, url, requested_format, title, cancel_event):
        await self.store.update(job_id, status=JOB_STATUS_DOWNLOADING, progress=0)
        log_event(
            logging.INFO,
            "job_started",
            job_id=job_id,
            url=url,
            format=requested_format,
            strategies=self.strategy_names,
        )
        last_error = None
        total = len(self.strategies)
        for position, descriptor in enumerate(self.strategies, start=1):
            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelledError(job_id)
            record = await self.store.get(job_id)
            await self.store.update(
                job_id,
                status=JOB_STATUS_DOWNLOADING,
                progress=0,
                strategy=descriptor.name,
                attempts=record.attempts + 1,
            )
            log_event(
                logging.INFO,
                "attempt_started",
                job_id=job_id,
                strategy=descriptor.name,
                position=position,
                total=total,
            )
            outcome = await self._run_attempt(descriptor, job_id, url, requested_format, title, cancel_event)
            if outcome.ok:
                log_event(
                    logging.INFO,
                    "attempt_succeeded",
                    job_id=job_id,
                    strategy=descriptor.name,
                    position=position,
                )
                log_event(
                    logging.INFO,
                    "job_completed",
                    job_id=job_id,
                    strategy=descriptor.name,
                    output_location=outcome.output_location,
                )
                return await self.store.get(job_id)

            last_error = f"{descriptor.name}: {outcome.error}"
            log_event(
                logging.WARNING,
                "attempt_failed",
                job_id=job_id,
                strategy=descriptor.name,
                kind=outcome.kind,
                error=outcome.error,
            )
            await self.store.update(job_id, last_error=last_error)
            if outcome.fatal:
                break
            if position < total:
                await self._pause(cancel_event, job_id)

        raise ExhaustionFailure(last_error or "no strategy succeeded")

    async def _run_attempt(self, descriptor, job_id, url, requested_format, title, cancel_event):
        reporter = AttemptReporter(self.store, job_id, strategy=descriptor.name)
        attempt = asyncio.ensure_future(
            descriptor.executor.attempt(job_id, url, requested_format, title, reporter)
        )
        watchers = {attempt}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            watchers.add(cancel_waiter)
        try:
            done, _ = await asyncio.wait(
                watchers,
                timeout=self.attempt_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if attempt in done:
                try:
                    return attempt.result()
                except JobCancelledError:
                    raise
                except Exception as exc:
                    logger.exception("strategy %s faulted for job %s", descriptor.name, job_id)
                    return AttemptOutcome.retryable(f"unexpected_fault: {exc}")
            if cancel_waiter is not None and cancel_waiter in done:
                raise JobCancelledError(job_id)
            log_event(
                logging.WARNING,
                "attempt_timeout",
                job_id=job_id,
                strategy=descriptor.name,
                timeout_seconds=self.attempt_timeout_seconds,
            )
            return AttemptOutcome.retryable("attempt_timeout")
        finally:
            for task in watchers:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*watchers, return_exceptions=True)

    async def _pause(self, cancel_event, job_id):
        pause = asyncio.ensure_future(self._sleep(self.retry_delay_seconds))
        if cancel_event is None:
            await pause
            return
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({pause, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (pause, cancel_waiter):
                if not task.done():
                    task.cancel()
            await asyncio.gather(pause, cancel_waiter, return_exceptions=True)
        if cancel_event.is_set():
            raise JobCancelledError(job_id)

    async def _mark_failed(self, job_id, reason):
        try:
            record = await self.store.get(job_id)
            if record.is_terminal:
                return record
            if record.status == JOB_STATUS_PENDING:
                await self.store.update(job_id, status=JOB_STATUS_DOWNLOADING, progress=0)
            return await self.store.update(
                job_id,
                status=JOB_STATUS_FAILED,
                progress=0,
                last_error=reason,
            )
        except InvalidTransitionError:
            return await self.store.get(job_id)
