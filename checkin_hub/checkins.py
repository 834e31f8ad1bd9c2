import logging
from dataclasses import dataclass

from .progress import STATUS_PENDING_REVIEW, derive_status
from .progress_store import ProgressStore
from .review_scheduler import ReviewRequest, ReviewScheduler

logger = logging.getLogger(__name__)


@dataclass
class CheckInResult:
    checkin: dict
    intervention: dict | None

    @property
    def status(self) -> str:
        return self.checkin["status"]

    @property
    def needs_review(self) -> bool:
        return self.status == STATUS_PENDING_REVIEW


class CheckInService:
    """Records check-ins and remedial completions for authenticated students."""

    def __init__(self, store: ProgressStore, review_scheduler: ReviewScheduler):
        self.store = store
        self.review_scheduler = review_scheduler

    async def record_check_in(
        self, student_id: str, quiz_score: int, focus_minutes: int,
    ) -> CheckInResult:
        """Persist a check-in (and its intervention, if review is needed).

        The review itself is not started here; call :meth:`start_review` once
        the student has been told the outcome.
        """
        status = derive_status(quiz_score, focus_minutes)
        checkin, intervention = await self.store.create_checkin(
            student_id, quiz_score, focus_minutes, status,
        )
        logger.info(
            "Check-in %s for student %s: quiz=%s focus=%s -> %s",
            checkin["id"], student_id, quiz_score, focus_minutes, status,
        )
        return CheckInResult(checkin=checkin, intervention=intervention)

    def start_review(self, result: CheckInResult) -> None:
        if result.intervention is None:
            return
        self.review_scheduler.request_review(ReviewRequest(
            student_id=result.checkin["student_id"],
            intervention_id=result.intervention["id"],
            quiz_score=result.checkin["quiz_score"],
            focus_minutes=result.checkin["focus_minutes"],
        ))

    async def record_remedial_completion(self, student_id: str, intervention_id: int) -> dict:
        """Mark the student's assigned intervention as done.

        Raises InterventionStateError (NOT_FOUND, NOT_ASSIGNED or
        ALREADY_COMPLETED) without changing anything otherwise.
        """
        record = await self.store.complete_intervention(intervention_id, student_id)
        logger.info("Student %s completed intervention %s", student_id, intervention_id)
        return record

    async def pending_interventions(self, student_id: str) -> list[dict]:
        return await self.store.find_pending_interventions(student_id)


def public_intervention(record: dict) -> dict:
    """Client-facing view of an intervention record."""
    return {
        "interventionId": record["id"],
        "studentId": record["student_id"],
        "taskAssigned": record["task_assigned"],
        "assignedTasks": record["assigned_tasks"],
        "completed": record["completed"],
        "createdAt": record["created_at"],
        "updatedAt": record["updated_at"],
    }
