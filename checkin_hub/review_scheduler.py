"""Mentor review of pending interventions.

A failing check-in opens an intervention that waits for a review decision.
The decision is produced by one of two policies, chosen at startup:

``SimulatedReviewPolicy``
    Decides in-process after a fixed delay, picking the remedial tasks
    from the check-in scores.

``DelegatedReviewPolicy``
    Posts a one-shot notification to an external decision service and
    returns.  The service answers later through the approval webhook,
    which calls :meth:`ReviewScheduler.apply_decision` directly.

Whichever path produces it, a decision is persisted before delivery is
attempted, and an intervention accepts at most one decision.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

import httpx

from .dispatcher import EventDispatcher
from .progress import build_remedial_tasks
from .progress_store import InterventionStateError, ProgressStore
from .ws_constants import REVIEW_MODE_DELEGATED, REVIEW_MODE_SIMULATION

logger = logging.getLogger(__name__)

DEFAULT_REVIEW_DELAY = 5.0  # seconds
DEFAULT_WEBHOOK_TIMEOUT = 5.0  # seconds

SOURCE_SIMULATION = "simulation"
SOURCE_WEBHOOK = "webhook"
SOURCE_MANUAL = "manual"


@dataclass
class ReviewRequest:
    student_id: str
    intervention_id: int
    quiz_score: int
    focus_minutes: int
    requested_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


@dataclass
class DecisionOutcome:
    intervention: dict
    delivered: bool


ApplyDecision = Callable[..., Awaitable[DecisionOutcome]]


class SimulatedReviewPolicy:
    mode = REVIEW_MODE_SIMULATION

    def __init__(
        self,
        delay_seconds: float = DEFAULT_REVIEW_DELAY,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.delay_seconds = delay_seconds
        self._sleep = sleep

    async def review(self, request: ReviewRequest, apply_decision: ApplyDecision) -> None:
        await self._sleep(self.delay_seconds)
        assigned_tasks = build_remedial_tasks(request.quiz_score, request.focus_minutes)
        try:
            outcome = await apply_decision(
                request.student_id,
                request.intervention_id,
                assigned_tasks,
                source=SOURCE_SIMULATION,
            )
        except InterventionStateError as e:
            # Another path (webhook or operator) decided first
            logger.info(
                "Simulated review of intervention %s skipped: %s",
                request.intervention_id, e.message,
            )
            return
        logger.info(
            "Simulated review approved intervention %s for student %s (delivered=%s)",
            request.intervention_id, request.student_id, outcome.delivered,
        )


class DelegatedReviewPolicy:
    mode = REVIEW_MODE_DELEGATED

    def __init__(
        self,
        webhook_url: str | None,
        *,
        timeout: float = DEFAULT_WEBHOOK_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._transport = transport

    async def review(self, request: ReviewRequest, apply_decision: ApplyDecision) -> None:
        if not self.webhook_url:
            logger.error(
                "CHECKIN_WEBHOOK_URL not configured; intervention %s stays pending",
                request.intervention_id,
            )
            return
        payload = {
            "studentId": request.student_id,
            "interventionId": request.intervention_id,
            "quizScore": request.quiz_score,
            "focusMinutes": request.focus_minutes,
            "timestamp": request.requested_at,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(
                "Failed to notify decision service for intervention %s: %s",
                request.intervention_id, e,
            )
            return
        logger.info(
            "Decision service notified for student %s (intervention %s)",
            request.student_id, request.intervention_id,
        )


class ReviewScheduler:
    """Runs reviews in the background and applies their decisions.

    Each outstanding review is an ``asyncio.Task`` keyed by intervention id,
    which doubles as its cancellation handle.
    """

    def __init__(
        self,
        store: ProgressStore,
        dispatcher: EventDispatcher,
        policy: SimulatedReviewPolicy | DelegatedReviewPolicy,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.policy = policy
        self._tasks: dict[int, asyncio.Task] = {}

    @property
    def mode(self) -> str:
        return self.policy.mode

    def request_review(self, request: ReviewRequest) -> asyncio.Task:
        """Start the review in the background and return its task."""
        task = asyncio.ensure_future(self.policy.review(request, self.apply_decision))
        self._tasks[request.intervention_id] = task
        task.add_done_callback(functools.partial(self._review_done, request.intervention_id))
        logger.info(
            "Review requested for intervention %s (student %s, mode %s)",
            request.intervention_id, request.student_id, self.mode,
        )
        return task

    def _review_done(self, intervention_id: int, task: asyncio.Task) -> None:
        """Forget the finished task and log its failure instead of silently swallowing it."""
        if self._tasks.get(intervention_id) is task:
            del self._tasks[intervention_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Review of intervention %s failed: %s", intervention_id, exc, exc_info=exc,
            )

    async def apply_decision(
        self,
        student_id: str,
        intervention_id: int,
        assigned_tasks: str,
        *,
        source: str,
    ) -> DecisionOutcome:
        """Persist the decision, then try to push it to the student.

        Raises InterventionStateError if the intervention is unknown, owned by
        someone else, or already decided.
        """
        record = await self.store.assign_intervention(
            intervention_id, assigned_tasks, student_id=student_id,
        )
        logger.info(
            "Intervention %s assigned to student %s (source=%s)",
            intervention_id, student_id, source,
        )
        delivered = await self.dispatcher.deliver_intervention_assigned(
            student_id, intervention_id, assigned_tasks, source=source,
        )
        return DecisionOutcome(intervention=record, delivered=delivered)

    def pending_reviews(self) -> list[int]:
        return list(self._tasks)

    def cancel(self, intervention_id: int) -> bool:
        task = self._tasks.get(intervention_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                # Already reported by _review_done
                pass
        self._tasks.clear()
