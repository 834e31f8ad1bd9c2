"""Best-effort push of server events to whichever connection a student has.

Delivery is attempted once.  A student who is offline at that moment is
expected to pick the event up through the pending-interventions query on
their next connect; nothing is queued here.
"""

import logging

from .connection_registry import ConnectionRegistry
from .ws_constants import MSG_INTERVENTION_ASSIGNED, CLIENT_MODE_REMEDIAL_ONLY

logger = logging.getLogger(__name__)

_ASSIGNED_MESSAGE = (
    "Remedial task has been assigned by your mentor. "
    "Please complete it to unlock full access."
)


class EventDispatcher:
    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry

    async def deliver(self, student_id: str, event: dict) -> bool:
        delivered = await self.registry.send(student_id, event)
        if delivered:
            logger.info("Delivered %s to student %s", event.get("type"), student_id)
        else:
            logger.info(
                "Student %s is offline; %s will be picked up on reconnect",
                student_id, event.get("type"),
            )
        return delivered

    async def deliver_intervention_assigned(
        self,
        student_id: str,
        intervention_id: int,
        assigned_tasks: str,
        *,
        source: str,
    ) -> bool:
        return await self.deliver(student_id, {
            "type": MSG_INTERVENTION_ASSIGNED,
            "interventionId": intervention_id,
            "assignedTasks": assigned_tasks,
            "message": _ASSIGNED_MESSAGE,
            "mode": CLIENT_MODE_REMEDIAL_ONLY,
            "source": source,
        })
