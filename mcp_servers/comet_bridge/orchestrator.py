"""Polling loop that turns repeated status samples into one task outcome."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from .config import BridgeConfig
from .errors import PollTimeout, StageError
from .status import TaskState, TaskStatus

logger = logging.getLogger("mcp.comet.orchestrator")

EMPTY_RESPONSE = "Task completed (no response text extracted)"

Sampler = Callable[[], Awaitable[TaskStatus]]


@dataclass
class PollRun:
    """Mutable log of one run; created per `run()` call and discarded after."""

    started_at: float
    deadline: float
    saw_working: bool = False
    steps: list[str] = field(default_factory=list)
    last_agent_url: str = ""
    log: list[str] = field(default_factory=list)

    def add_step(self, step: str) -> bool:
        if not step or step in self.steps:
            return False
        self.steps.append(step)
        return True


@dataclass
class RunOutcome:
    completed: bool
    response: str
    steps: list[str]
    elapsed: float
    log: list[str] = field(default_factory=list)


class PollOrchestrator:
    """Sample the page at a fixed interval until the task completes or times out.

    Completion is only trusted once WORKING has been seen during this run, so
    an answer left over from a previous task is not returned. A page that is
    already COMPLETED with no WORKING phase is accepted after
    `quick_response_grace` seconds (a fast answer finished between polls).
    """

    def __init__(
        self,
        sample: Sampler,
        config: BridgeConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.sample = sample
        self.config = config
        self.clock = clock
        self.sleep = sleep

    def _progress(self, run: PollRun, message: str) -> None:
        line = f"[comet {self.clock() - run.started_at:.0f}s] {message}"
        run.log.append(line)
        logger.info(line)

    async def run(self, timeout: float) -> RunOutcome:
        """Poll until completion; raises PollTimeout on deadline."""
        started = self.clock()
        run = PollRun(started_at=started, deadline=started + max(0.0, timeout))

        while self.clock() < run.deadline:
            await self.sleep(self.config.poll_interval)
            elapsed = self.clock() - run.started_at
            try:
                status = await self.sample()
            except Exception as exc:  # noqa: BLE001
                raise StageError(
                    stage="poll",
                    reason=str(exc) or type(exc).__name__,
                    suggestion="Call poll() to check the task, or connect() again if the browser went away",
                    steps=list(run.steps),
                    details={"elapsed": round(elapsed, 1)},
                ) from exc

            for step in status.steps:
                if run.add_step(step):
                    self._progress(run, step)

            if status.agent_browsing_url and status.agent_browsing_url != run.last_agent_url:
                run.last_agent_url = status.agent_browsing_url
                self._progress(run, f"Browsing: {status.agent_browsing_url}")

            if status.state is TaskState.WORKING:
                if not run.saw_working:
                    self._progress(run, "Task started")
                run.saw_working = True
                if run.add_step(status.current_step):
                    self._progress(run, f"Current: {status.current_step}")
                continue

            if status.state is TaskState.COMPLETED and (
                run.saw_working or elapsed > self.config.quick_response_grace
            ):
                self._progress(run, "Task completed")
                return RunOutcome(
                    completed=True,
                    response=status.response or EMPTY_RESPONSE,
                    steps=list(run.steps),
                    elapsed=elapsed,
                    log=list(run.log),
                )

        self._progress(run, "Timeout")
        raise PollTimeout(self.clock() - run.started_at, run.steps, run.log)


__all__ = ["EMPTY_RESPONSE", "PollOrchestrator", "PollRun", "RunOutcome", "Sampler"]
