"""Durable, replayable workflow steps backed by the persisted step log."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from core.config import settings
from core.errors import ServiceError
from core.logging import get_logger
from incidents.checkpoints import CheckpointStore, WorkflowRun
from incidents.models import utcnow

logger = get_logger(__name__)


class WorkflowStep:
    """
    Step runner bound to one workflow run.

    A step whose output is already in the run's log returns that output
    without executing again. Otherwise it runs with retries on ServiceError
    and its output is persisted before the caller moves on.
    """

    def __init__(
        self,
        checkpoints: CheckpointStore,
        run_id: str,
        attempts: int | None = None,
        min_wait: float | None = None,
        max_wait: float | None = None
    ):
        self.checkpoints = checkpoints
        self.run_id = run_id
        self.attempts = attempts or settings.pipeline_step_attempts
        self.min_wait = settings.pipeline_retry_min_wait if min_wait is None else min_wait
        self.max_wait = settings.pipeline_retry_max_wait if max_wait is None else max_wait

    def _load(self) -> WorkflowRun:
        run = self.checkpoints.load(self.run_id)
        if run is None:
            raise ValueError(f"Workflow run not found: {self.run_id}")
        return run

    def _begin(self, name: str) -> WorkflowRun:
        run = self._load()
        run.current_step = name
        run.attempts[name] = run.attempts.get(name, 0) + 1
        self.checkpoints.save(run)
        return run

    def _record(self, name: str, output: Any) -> None:
        run = self._load()
        run.outputs[name] = output
        run.current_step = None
        self.checkpoints.save(run)

    def _log_retry(self, name: str) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "Workflow step failed, retrying",
                run_id=self.run_id,
                step=name,
                attempt=retry_state.attempt_number,
                error=str(exc)
            )
        return before_sleep

    def completed(self, name: str) -> bool:
        return name in self._load().outputs

    async def do(self, name: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """
        Execute ``fn`` once for this run, or replay its recorded output.

        The output must be JSON-serializable.
        """
        run = self._load()
        if name in run.outputs:
            logger.debug("Replaying recorded step output", run_id=self.run_id, step=name)
            return run.outputs[name]

        logger.info("Workflow step started", run_id=self.run_id, step=name)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=1, min=self.min_wait, max=self.max_wait),
            retry=retry_if_exception_type(ServiceError),
            before_sleep=self._log_retry(name),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                self._begin(name)
                output = await fn()

        self._record(name, output)
        logger.info("Workflow step completed", run_id=self.run_id, step=name)
        return output

    async def sleep(self, name: str, seconds: float) -> None:
        """
        Suspend the run until a persisted wake-up time.

        The wake-up time is fixed on first entry, so a run resumed after a
        restart only waits for whatever remains of the original delay.
        """
        run = self._load()
        if name in run.outputs:
            return

        if name in run.wake_at:
            wake_at = datetime.fromisoformat(run.wake_at[name])
        else:
            wake_at = utcnow() + timedelta(seconds=seconds)
            run.wake_at[name] = wake_at.isoformat()
            run.current_step = name
            self.checkpoints.save(run)

        remaining = (wake_at - utcnow()).total_seconds()
        logger.info(
            "Workflow sleeping",
            run_id=self.run_id,
            step=name,
            wake_at=wake_at.isoformat(),
            remaining_seconds=max(remaining, 0)
        )
        if remaining > 0:
            await asyncio.sleep(remaining)

        self._record(name, {"woke_at": utcnow().isoformat()})
