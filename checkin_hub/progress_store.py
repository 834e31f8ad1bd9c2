"""Persistent store for students, daily check-ins, and interventions.

Storage is a single JSON file with atomic writes
(``tempfile`` + ``os.replace``).  Every mutation is applied to a copy of
the current state and only becomes visible once that copy has been
written, so a failed write never leaves a partial record behind.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from .progress import STATUS_PENDING_REVIEW

logger = logging.getLogger(__name__)

# Intervention state error codes
NOT_FOUND = "NOT_FOUND"
NOT_ASSIGNED = "NOT_ASSIGNED"
ALREADY_ASSIGNED = "ALREADY_ASSIGNED"
ALREADY_COMPLETED = "ALREADY_COMPLETED"


class InterventionStateError(Exception):
    """An intervention is missing, not owned by the caller, or in the wrong state."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _empty_state() -> dict:
    return {
        "next_ids": {"checkin": 1, "intervention": 1},
        "students": {},
        "checkins": {},
        "interventions": {},
    }


class ProgressStore:
    def __init__(self, filepath: str | Path):
        self.filepath = Path(filepath).resolve()
        self._data: dict = _empty_state()
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> None:
        data = await asyncio.to_thread(self._load_sync)
        async with self._lock:
            self._data = data if data is not None else _empty_state()

    def _load_sync(self) -> dict | None:
        if not self.filepath.exists():
            return None
        try:
            with open(self.filepath) as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError):
            logger.warning("Corrupt %s, starting fresh", self.filepath.name)
            return None
        state = _empty_state()
        state.update(data)
        return state

    def _save_sync(self, data: dict) -> None:
        """Synchronous save; must be called via asyncio.to_thread()."""
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=str(self.filepath.parent), suffix=".tmp"
        )
        try:
            with os.fdopen(tmp_fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.filepath)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    async def _commit(self, data: dict) -> None:
        """Write *data* and make it the current state. Caller holds the lock."""
        await asyncio.to_thread(self._save_sync, data)
        self._data = data

    async def ping(self) -> bool:
        """True if the data directory exists (or can be created) and is writable."""
        return await asyncio.to_thread(self._ping_sync)

    def _ping_sync(self) -> bool:
        directory = self.filepath.parent
        while not directory.exists():
            directory = directory.parent
        return directory.is_dir() and os.access(directory, os.W_OK)

    # ------------------------------------------------------------------
    # Students
    # ------------------------------------------------------------------

    async def get_student(self, student_id: str) -> dict | None:
        async with self._lock:
            student = self._data["students"].get(student_id)
            return dict(student) if student else None

    async def create_student(self, student_id: str, name: str) -> dict:
        async with self._lock:
            existing = self._data["students"].get(student_id)
            if existing:
                return dict(existing)
            data = copy.deepcopy(self._data)
            student = {"student_id": student_id, "name": name, "created_at": _now()}
            data["students"][student_id] = student
            await self._commit(data)
            return dict(student)

    # ------------------------------------------------------------------
    # Check-ins
    # ------------------------------------------------------------------

    async def create_checkin(
        self,
        student_id: str,
        quiz_score: int,
        focus_minutes: int,
        status: str,
    ) -> tuple[dict, dict | None]:
        """Record a check-in, plus a fresh intervention when review is pending.

        Both records are written in one commit.
        """
        async with self._lock:
            data = copy.deepcopy(self._data)
            now = _now()
            checkin_id = data["next_ids"]["checkin"]
            data["next_ids"]["checkin"] = checkin_id + 1
            checkin = {
                "id": checkin_id,
                "student_id": student_id,
                "quiz_score": quiz_score,
                "focus_minutes": focus_minutes,
                "status": status,
                "created_at": now,
            }
            data["checkins"][str(checkin_id)] = checkin

            intervention = None
            if status == STATUS_PENDING_REVIEW:
                intervention_id = data["next_ids"]["intervention"]
                data["next_ids"]["intervention"] = intervention_id + 1
                intervention = {
                    "id": intervention_id,
                    "student_id": student_id,
                    "checkin_id": checkin_id,
                    "task_assigned": False,
                    "assigned_tasks": None,
                    "completed": False,
                    "created_at": now,
                    "updated_at": now,
                }
                data["interventions"][str(intervention_id)] = intervention

            await self._commit(data)
            return dict(checkin), (dict(intervention) if intervention else None)

    async def get_checkin(self, checkin_id: int) -> dict | None:
        async with self._lock:
            checkin = self._data["checkins"].get(str(checkin_id))
            return dict(checkin) if checkin else None

    async def list_checkins(self, student_id: str) -> list[dict]:
        """All check-ins for *student_id*, newest first."""
        async with self._lock:
            rows = [dict(c) for c in self._data["checkins"].values()
                    if c["student_id"] == student_id]
        rows.sort(key=lambda c: c["id"], reverse=True)
        return rows

    # ------------------------------------------------------------------
    # Interventions
    # ------------------------------------------------------------------

    async def get_intervention(self, intervention_id: int) -> dict | None:
        async with self._lock:
            record = self._data["interventions"].get(str(intervention_id))
            return dict(record) if record else None

    async def list_interventions(self, student_id: str) -> list[dict]:
        """All interventions for *student_id*, newest first."""
        async with self._lock:
            rows = [dict(i) for i in self._data["interventions"].values()
                    if i["student_id"] == student_id]
        rows.sort(key=lambda i: i["id"], reverse=True)
        return rows

    async def find_pending_interventions(self, student_id: str) -> list[dict]:
        """Assigned, not yet completed interventions for *student_id*, newest first."""
        rows = await self.list_interventions(student_id)
        return [i for i in rows if i["task_assigned"] and not i["completed"]]

    def _owned(self, data: dict, intervention_id: int, student_id: str | None) -> dict:
        record = data["interventions"].get(str(intervention_id))
        if record is None or (student_id is not None and record["student_id"] != student_id):
            raise InterventionStateError(NOT_FOUND, "Intervention not found")
        return record

    async def assign_intervention(
        self,
        intervention_id: int,
        assigned_tasks: str,
        *,
        student_id: str | None = None,
    ) -> dict:
        """Mark a pending intervention as assigned with *assigned_tasks*.

        Raises InterventionStateError if it does not exist, belongs to a
        different student, or already has a decision.
        """
        async with self._lock:
            data = copy.deepcopy(self._data)
            record = self._owned(data, intervention_id, student_id)
            if record["task_assigned"]:
                raise InterventionStateError(ALREADY_ASSIGNED, "Intervention already assigned")
            record["task_assigned"] = True
            record["assigned_tasks"] = assigned_tasks
            record["updated_at"] = _now()
            await self._commit(data)
            return dict(record)

    async def complete_intervention(self, intervention_id: int, student_id: str) -> dict:
        """Mark an assigned intervention owned by *student_id* as completed."""
        async with self._lock:
            data = copy.deepcopy(self._data)
            record = self._owned(data, intervention_id, student_id)
            if not record["task_assigned"]:
                raise InterventionStateError(NOT_ASSIGNED, "Intervention has not been assigned yet")
            if record["completed"]:
                raise InterventionStateError(ALREADY_COMPLETED, "Intervention already completed")
            record["completed"] = True
            record["updated_at"] = _now()
            await self._commit(data)
            return dict(record)
