"""WebSocket session handler: authenticates a connection and serves check-ins.

The main entry point is ``websocket_checkin()``, which is mounted as ``/ws``
by server.py.  Each connection moves through three states::

    unauthenticated --connect(valid token)--> authenticated --close--> closed
           |
           +--connect(bad token) / close--> closed

Only ``connect`` is accepted before authentication.  Messages are handled
one at a time in arrival order.
"""

import json
import logging

from fastapi import WebSocket, WebSocketDisconnect

from .auth import verify_identity
from .checkins import CheckInService
from .connection_registry import Connection, ConnectionRegistry
from .progress import validate_scores
from .progress_store import InterventionStateError
from .ws_constants import (
    MSG_CONNECT,
    MSG_DAILY_CHECKIN,
    MSG_REMEDIAL_COMPLETED,
    MSG_CONNECTED,
    MSG_CHECKIN_RESULT,
    MSG_ERROR,
    ERR_INVALID_FORMAT,
    ERR_MISSING_TYPE,
    ERR_UNKNOWN_TYPE,
    ERR_INVALID_TOKEN,
    ERR_NOT_AUTHENTICATED,
    ERR_ALREADY_CONNECTED,
    ERR_VALIDATION,
    ERR_CHECKIN_FAILED,
    ERR_COMPLETION_FAILED,
    ERR_INTERNAL,
    CLOSE_UNAUTHORIZED,
    CLIENT_MODE_NORMAL,
)

logger = logging.getLogger(__name__)

STATE_UNAUTHENTICATED = "unauthenticated"
STATE_AUTHENTICATED = "authenticated"
STATE_CLOSED = "closed"

_ON_TRACK_MESSAGE = "Great job! You are on track."
_PENDING_MESSAGE = "Your performance needs attention. Waiting for mentor review."
_COMPLETED_MESSAGE = "Remedial task completed successfully! Full access restored."


class WebSocketSession:
    """Holds all mutable state for a single WebSocket connection.

    Each message type is handled by a ``handle_<type>`` method, keeping the
    main loop thin and each handler focused on one concern.
    """

    def __init__(
        self,
        websocket: WebSocket,
        *,
        registry: ConnectionRegistry,
        checkin_service: CheckInService,
        review_mode: str,
    ):
        self.ws = websocket
        self.registry = registry
        self.checkin_service = checkin_service
        self.review_mode = review_mode

        # Per-connection mutable state
        self.connection = Connection(websocket)
        self.state = STATE_UNAUTHENTICATED
        self.student_id: str | None = None
        self._ws_alive = True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def safe_send(self, data: dict) -> bool:
        """Send JSON to client, return False if disconnected."""
        if not self._ws_alive:
            return False
        try:
            await self.ws.send_json(data)
            return True
        except (WebSocketDisconnect, RuntimeError):
            self._ws_alive = False
            self.connection.closed = True
            return False

    async def send_error(self, message: str, code: str) -> bool:
        return await self.safe_send({"type": MSG_ERROR, "message": message, "code": code})

    async def close(self, code: int, reason: str) -> None:
        self.state = STATE_CLOSED
        self.connection.closed = True
        if not self._ws_alive:
            return
        self._ws_alive = False
        try:
            await self.ws.close(code=code, reason=reason)
        except RuntimeError:
            logger.debug("WebSocket already closed")

    # ------------------------------------------------------------------
    # Message handlers
    # ------------------------------------------------------------------

    async def handle_connect(self, payload: dict) -> None:
        if self.state == STATE_AUTHENTICATED:
            await self.send_error(
                f"Already connected as {self.student_id}.", ERR_ALREADY_CONNECTED,
            )
            return

        student_id = verify_identity(payload.get("token"))
        if student_id is None:
            logger.warning("Rejected WebSocket connect with an invalid token")
            await self.send_error("Invalid token", ERR_INVALID_TOKEN)
            await self.close(CLOSE_UNAUTHORIZED, "Unauthorized")
            return

        await self.registry.bind(student_id, self.connection)
        self.student_id = student_id
        self.state = STATE_AUTHENTICATED
        await self.safe_send({
            "type": MSG_CONNECTED,
            "message": "Successfully connected",
            "studentId": student_id,
            "mode": self.review_mode,
        })

    async def handle_daily_checkin(self, payload: dict) -> None:
        quiz_score = payload.get("quizScore")
        focus_minutes = payload.get("focusMinutes")
        problem = validate_scores(quiz_score, focus_minutes)
        if problem:
            await self.send_error(problem, ERR_VALIDATION)
            return

        try:
            result = await self.checkin_service.record_check_in(
                self.student_id, quiz_score, focus_minutes,
            )
        except Exception:
            logger.exception("Failed to record daily check-in for %s", self.student_id)
            await self.send_error("Failed to process daily check-in.", ERR_CHECKIN_FAILED)
            return

        response = {
            "type": MSG_CHECKIN_RESULT,
            "status": result.status,
            "checkInId": result.checkin["id"],
        }
        if result.needs_review:
            response["interventionId"] = result.intervention["id"]
            response["message"] = _PENDING_MESSAGE
        else:
            response["message"] = _ON_TRACK_MESSAGE
        await self.safe_send(response)

        # The decision must never overtake the check-in result
        self.checkin_service.start_review(result)

    async def handle_remedial_completed(self, payload: dict) -> None:
        intervention_id = payload.get("interventionId")
        if intervention_id is None:
            await self.send_error("interventionId is required", ERR_VALIDATION)
            return
        if isinstance(intervention_id, bool) or not isinstance(intervention_id, int):
            await self.send_error("interventionId must be an integer", ERR_VALIDATION)
            return

        try:
            await self.checkin_service.record_remedial_completion(
                self.student_id, intervention_id,
            )
        except InterventionStateError as e:
            await self.send_error(e.message, e.code)
            return
        except Exception:
            logger.exception("Failed to complete intervention %s", intervention_id)
            await self.send_error("Failed to mark remedial as completed.", ERR_COMPLETION_FAILED)
            return

        await self.safe_send({
            "type": MSG_REMEDIAL_COMPLETED,
            "message": _COMPLETED_MESSAGE,
            "interventionId": intervention_id,
            "mode": CLIENT_MODE_NORMAL,
        })

    # ------------------------------------------------------------------
    # Main loop & cleanup
    # ------------------------------------------------------------------

    # Dispatch table: message type -> handler method name
    _HANDLERS = {
        MSG_CONNECT: "handle_connect",
        MSG_DAILY_CHECKIN: "handle_daily_checkin",
        MSG_REMEDIAL_COMPLETED: "handle_remedial_completed",
    }

    _REQUIRES_AUTH = frozenset({MSG_DAILY_CHECKIN, MSG_REMEDIAL_COMPLETED})

    async def run(self) -> None:
        """Main message loop: dispatches to handler methods until closed."""
        try:
            while self.state != STATE_CLOSED:
                try:
                    data = await self.ws.receive_text()
                except KeyError:
                    # Binary frame: receive_text() finds no "text" key
                    await self.send_error("Invalid message format.", ERR_INVALID_FORMAT)
                    continue

                try:
                    msg = json.loads(data)
                except (json.JSONDecodeError, ValueError, TypeError) as e:
                    logger.warning("Malformed JSON from client: %s", e)
                    await self.send_error("Invalid message format.", ERR_INVALID_FORMAT)
                    continue
                if not isinstance(msg, dict):
                    await self.send_error("Invalid message format.", ERR_INVALID_FORMAT)
                    continue

                msg_type = msg.get("type")
                if not msg_type:
                    await self.send_error("Missing message type.", ERR_MISSING_TYPE)
                    continue

                handler_name = self._HANDLERS.get(msg_type)
                if not handler_name:
                    await self.send_error(f"Unknown message type: {msg_type}", ERR_UNKNOWN_TYPE)
                    continue

                if msg_type in self._REQUIRES_AUTH and self.state != STATE_AUTHENTICATED:
                    await self.send_error("Not authenticated", ERR_NOT_AUTHENTICATED)
                    continue

                payload = msg.get("payload")
                if payload is None:
                    payload = {}
                if not isinstance(payload, dict):
                    await self.send_error("Invalid message format.", ERR_INVALID_FORMAT)
                    continue

                try:
                    await getattr(self, handler_name)(payload)
                except Exception:
                    logger.exception("Unexpected error handling message type=%s", msg_type)
                    await self.send_error("An internal error occurred.", ERR_INTERNAL)
        except (WebSocketDisconnect, RuntimeError):
            pass

    async def cleanup(self) -> None:
        """Release the registry entry, unless a newer connection already owns it."""
        self.state = STATE_CLOSED
        self.connection.closed = True
        if self.student_id:
            await self.registry.unbind(self.student_id, self.connection.connection_id)


# ------------------------------------------------------------------
# FastAPI endpoint, which is what server.py mounts at /ws
# ------------------------------------------------------------------

async def websocket_checkin(
    websocket: WebSocket,
    *,
    registry: ConnectionRegistry,
    checkin_service: CheckInService,
    review_mode: str,
) -> None:
    """WebSocket endpoint handler for /ws."""
    await websocket.accept()
    session = WebSocketSession(
        websocket,
        registry=registry,
        checkin_service=checkin_service,
        review_mode=review_mode,
    )
    try:
        await session.run()
    finally:
        await session.cleanup()
