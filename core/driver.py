"""
Agent Query Driver
Runs one turn of the underlying computation per session, appending every
output to the event log and publishing it to live subscribers
"""
import asyncio
import contextlib
import logging
import uuid
from typing import Any, Dict, Optional, Tuple

from core.agent_runners import AgentRunner
from core.broadcaster import EventBroadcaster
from core.errors import TurnInProgress, WriteConflict
from core.event_log import EventLog
from models.events import BaseEvent, EventType
from models.requests import StreamRequest
from models.session import Session
from utils.diagnostics import id_suffix

logger = logging.getLogger(__name__)

# Backend message types outside the closed event set
_OUTPUT_TYPE_ALIASES = {
    "tool_use": EventType.ASSISTANT,
    "tool_result": EventType.USER,
}


def new_session_id() -> str:
    return uuid.uuid4().hex


def classify_output(message: Dict[str, Any]) -> Tuple[EventType, Dict[str, Any]]:
    """
    Map one raw backend message onto the closed event set

    The message itself becomes the payload, so its original "type" is kept.

    Returns:
        (event type, payload)
    """
    raw_type = message.get("type")
    try:
        return EventType(raw_type), message
    except ValueError:
        return _OUTPUT_TYPE_ALIASES.get(raw_type, EventType.SYSTEM), message


class AgentQueryDriver:
    """
    Sole writer of the event log

    Each turn runs in its own task, tracked per session, and keeps running
    when its client disconnects unless the disconnect policy is "cancel".
    """

    def __init__(
        self,
        event_log: EventLog,
        broadcaster: EventBroadcaster,
        runner: AgentRunner,
        disconnect_policy: str = "continue",
    ):
        """
        Args:
            event_log: Durable event store
            broadcaster: Live subscriber registry
            runner: Computation backend
            disconnect_policy: "continue" or "cancel"
        """
        self.event_log = event_log
        self.broadcaster = broadcaster
        self.runner = runner
        self.disconnect_policy = disconnect_policy
        self._turns: Dict[str, asyncio.Task] = {}

    def is_turn_active(self, session_id: str) -> bool:
        task = self._turns.get(session_id)
        return task is not None and not task.done()

    def turn_task(self, session_id: str) -> Optional[asyncio.Task]:
        return self._turns.get(session_id)

    def start_turn(self, request: StreamRequest) -> str:
        """
        Start a turn in the background

        Args:
            request: Stream-start request with text; a missing session_id
                creates a new session

        Returns:
            The session id the turn runs in

        Raises:
            TurnInProgress: The session already has a running turn
        """
        if not request.starts_turn:
            raise ValueError("A turn needs input text")

        session_id = request.session_id or new_session_id()
        if self.is_turn_active(session_id):
            raise TurnInProgress(session_id)

        task = asyncio.create_task(self._run_turn(request, session_id))
        self._turns[session_id] = task
        logger.info(f"Turn started conv={id_suffix(session_id)} textLen={len(request.text or '')}")
        return session_id

    def on_client_disconnect(self, session_id: str):
        """
        Apply the disconnect policy once the last live subscriber has gone
        """
        if self.disconnect_policy != "cancel":
            return
        if self.broadcaster.subscriber_count(session_id) > 0:
            return
        task = self._turns.get(session_id)
        if task is not None and not task.done():
            logger.info(f"Cancelling turn conv={id_suffix(session_id)} after client disconnect")
            task.cancel()

    async def _prepare_session(self, request: StreamRequest, session_id: str) -> Session:
        session = await self.event_log.get_session(session_id)
        if session is None:
            session = Session(
                session_id=session_id,
                cwd=request.cwd,
                allowed_tools=request.allowed_tools,
            )
        else:
            updates: Dict[str, Any] = {}
            if request.cwd:
                updates["cwd"] = request.cwd
            if request.allowed_tools:
                updates["allowed_tools"] = request.allowed_tools
            if updates:
                session = session.model_copy(update=updates)
        await self.event_log.save_session(session)
        return session

    async def _emit(self, session_id: str, event_type: EventType, payload: Dict[str, Any]) -> BaseEvent:
        event = await self.event_log.append_event(session_id, event_type, payload)
        self.broadcaster.publish(event)
        return event

    async def _remember_agent_session(self, session: Session, message: Dict[str, Any]) -> Session:
        agent_session_id = message.get("session_id")
        if not isinstance(agent_session_id, str) or not agent_session_id:
            return session
        if agent_session_id == session.agent_session_id:
            return session
        session = session.model_copy(update={"agent_session_id": agent_session_id})
        await self.event_log.save_session(session)
        return session

    async def _run_turn(self, request: StreamRequest, session_id: str):
        try:
            session = await self._prepare_session(request, session_id)
            await self._emit(session_id, EventType.USER, {"type": "user", "subtype": "input", "text": request.text})

            terminal = False
            async with contextlib.aclosing(self.runner.run(request, session)) as outputs:
                async for message in outputs:
                    event_type, payload = classify_output(message)
                    if event_type == EventType.SYSTEM:
                        session = await self._remember_agent_session(session, message)
                    event = await self._emit(session_id, event_type, payload)
                    if event.is_terminal:
                        terminal = True
                        break

            if not terminal:
                await self._emit(session_id, EventType.RESULT, {"type": "result", "subtype": "incomplete"})
            logger.info(f"Turn finished conv={id_suffix(session_id)}")

        except asyncio.CancelledError:
            logger.info(f"Turn cancelled conv={id_suffix(session_id)}")
            await self._append_failure(session_id, "cancelled", "Turn cancelled")
            raise
        except WriteConflict:
            logger.exception(f"Event id conflict conv={id_suffix(session_id)}, stopping turn")
        except Exception as e:
            logger.exception(f"Turn failed conv={id_suffix(session_id)}: {e}")
            await self._append_failure(session_id, "agent_failure", str(e))
        finally:
            if self._turns.get(session_id) is asyncio.current_task():
                del self._turns[session_id]
            self.broadcaster.end_turn(session_id)

    async def _append_failure(self, session_id: str, subtype: str, message: str):
        try:
            await self._emit(session_id, EventType.ERROR, {"type": "error", "subtype": subtype, "message": message})
        except Exception as e:
            logger.error(f"Could not record terminal error conv={id_suffix(session_id)}: {e}")

    async def shutdown(self):
        """Cancel every running turn and wait for them to finish"""
        tasks = [task for task in self._turns.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
