"""
Stream Coordinator
Client-side state machine that consumes one turn's events in order and
recovers from transport loss by replaying from its cursor
"""
import asyncio
import contextlib
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from core.errors import (
    Disconnected,
    ProtocolError,
    SessionError,
    TransportError,
    TunnelError,
)
from models.events import BaseEvent
from models.requests import StreamRequest
from models.session import StreamCursor
from utils.diagnostics import id_suffix

logger = logging.getLogger(__name__)


class CoordinatorState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    DISCONNECTED = "disconnected"
    REPLAYING = "replaying"
    COMPLETED = "completed"
    FAILED = "failed"


# Failures the coordinator recovers from by replaying
RECOVERABLE_ERRORS = (TransportError, TunnelError)
# Failures that end the turn for this client
FATAL_ERRORS = (SessionError, ProtocolError)


class StreamCoordinator:
    """
    Drives one turn at a time against the proxy

    Events are handed to on_event strictly in increasing event_id order,
    each exactly once. A gap in ids is treated like a dropped connection.

    Usage:
        coordinator = StreamCoordinator(context, on_event=render)
        state = await coordinator.run("list the files")
    """

    def __init__(
        self,
        context,
        on_event: Optional[Callable[[BaseEvent], None]] = None,
        on_state_change: Optional[Callable[[CoordinatorState], None]] = None,
        max_resume_attempts: Optional[int] = None,
        resume_backoff_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            context: ClientContext (or anything with stream_client() and save_cursor())
            on_event: Called with every consumed event
            on_state_change: Called with every new state
            max_resume_attempts: Consecutive failed resumes allowed, settings default
            resume_backoff_seconds: First backoff delay, doubled per attempt
            sleep: Backoff sleep, replaceable in tests
        """
        self.context = context
        self.on_event = on_event
        self.on_state_change = on_state_change
        settings = context.settings
        self.max_resume_attempts = (
            max_resume_attempts if max_resume_attempts is not None else settings.max_resume_attempts
        )
        self.resume_backoff_seconds = (
            resume_backoff_seconds if resume_backoff_seconds is not None else settings.resume_backoff_seconds
        )
        self._sleep = sleep

        self.state = CoordinatorState.IDLE
        self.cursor: Optional[StreamCursor] = None
        self.events: List[BaseEvent] = []
        self.terminal_event: Optional[BaseEvent] = None
        self.failure: Optional[Exception] = None
        self._request: Optional[StreamRequest] = None
        # event_id of the first event consumed for the current turn
        self._turn_start: Optional[int] = None

    @property
    def session_id(self) -> Optional[str]:
        return self.cursor.session_id if self.cursor else None

    @property
    def last_event_id(self) -> int:
        return self.cursor.last_event_id if self.cursor else 0

    def _set_state(self, state: CoordinatorState):
        if state is self.state:
            return
        logger.info(f"Coordinator {self.state.value} -> {state.value} conv={id_suffix(self.session_id)}")
        self.state = state
        if self.on_state_change:
            self.on_state_change(state)

    def _disconnect(self, error: Exception):
        self.failure = error
        logger.warning(f"Stream lost at lastEventId={self.last_event_id}: {error}")
        self._set_state(CoordinatorState.DISCONNECTED)

    def _fail(self, error: Exception):
        self.failure = error
        logger.error(f"Stream failed conv={id_suffix(self.session_id)}: {error}")
        self._set_state(CoordinatorState.FAILED)

    def _consume(self, event: BaseEvent) -> bool:
        """
        Apply one event to the cursor

        The first event of a turn fixes its baseline: ids below it belong to
        earlier turns and are never consumed.

        Returns:
            True when the event ends the turn

        Raises:
            Disconnected: The event skips ids, so something was lost in transit
        """
        if self.cursor is None:
            self.cursor = StreamCursor(session_id=event.session_id)
        elif event.session_id != self.cursor.session_id:
            logger.warning(f"Ignoring event for foreign session conv={id_suffix(event.session_id)}")
            return False

        if event.event_id <= self.cursor.last_event_id:
            return False
        if self._turn_start is None:
            if event.event_id > self.cursor.last_event_id + 1:
                logger.info(
                    f"Turn starts at event {event.event_id}, moving cursor from "
                    f"{self.cursor.last_event_id} conv={id_suffix(self.cursor.session_id)}"
                )
                self.cursor = StreamCursor(session_id=self.cursor.session_id, last_event_id=event.event_id - 1)
            self._turn_start = event.event_id
        if event.event_id != self.cursor.last_event_id + 1:
            raise Disconnected(
                f"Gap in event ids: expected {self.cursor.last_event_id + 1}, got {event.event_id}"
            )

        self.cursor = self.cursor.advance(event.event_id)
        self.context.save_cursor(self.cursor)
        self.events.append(event)
        if self.on_event:
            self.on_event(event)

        if event.is_terminal:
            self.terminal_event = event
            return True
        return False

    async def _consume_stream(self, client, request: StreamRequest, last_event_id: Optional[int]):
        async with contextlib.aclosing(client.stream(request, last_event_id)) as events:
            async for event in events:
                if self.state is CoordinatorState.CONNECTING:
                    self._set_state(CoordinatorState.STREAMING)
                if self._consume(event):
                    self._set_state(CoordinatorState.COMPLETED)
                    return
        raise Disconnected("Stream ended before the turn finished")

    async def submit(
        self,
        text: str,
        session_id: Optional[str] = None,
        allowed_tools: Optional[List[str]] = None,
        cwd: Optional[str] = None,
        system_prompt: Optional[str] = None,
        max_turns: Optional[int] = None,
    ) -> CoordinatorState:
        """
        Start a turn and stream it until it ends or the transport fails

        Without session_id the turn continues the coordinator's current
        session, or the server creates a new one.

        Returns:
            COMPLETED, DISCONNECTED or FAILED
        """
        if self.state not in (CoordinatorState.IDLE, CoordinatorState.COMPLETED, CoordinatorState.FAILED):
            raise RuntimeError(f"Cannot submit while {self.state.value}")

        if session_id and session_id != self.session_id:
            self.cursor = self.context.cursors.get(session_id)
        self.failure = None
        self.terminal_event = None
        self._turn_start = None
        self._request = StreamRequest(
            text=text,
            session_id=session_id or self.session_id,
            allowed_tools=allowed_tools or [],
            cwd=cwd,
            system_prompt=system_prompt,
            max_turns=max_turns,
        )
        return await self._connect()

    async def _connect(self) -> CoordinatorState:
        self._set_state(CoordinatorState.CONNECTING)
        try:
            client = await self.context.stream_client()
            await self._consume_stream(client, self._request, None)
        except RECOVERABLE_ERRORS as e:
            self._disconnect(e)
        except FATAL_ERRORS as e:
            self._fail(e)
        return self.state

    async def resume(self) -> CoordinatorState:
        """
        Catch up from the cursor after a disconnect

        Replays everything after the cursor; when the turn already ended
        there, no live stream is opened. Otherwise the live stream is
        re-attached with Last-Event-ID.

        Returns:
            COMPLETED, DISCONNECTED or FAILED
        """
        if self.state is not CoordinatorState.DISCONNECTED:
            raise RuntimeError(f"Cannot resume while {self.state.value}")

        if self.cursor is None or self._turn_start is None:
            # Nothing of this turn arrived, so there is nothing to replay yet
            return await self._connect()

        self._set_state(CoordinatorState.REPLAYING)
        try:
            client = await self.context.stream_client()
            since = self.cursor.last_event_id
            replayed = await client.fetch_events(self.cursor.session_id, since)
            logger.info(f"Replayed {len(replayed)} event(s) since {since} conv={id_suffix(self.session_id)}")
            for event in replayed:
                if self._consume(event):
                    self._set_state(CoordinatorState.COMPLETED)
                    return self.state

            self._set_state(CoordinatorState.STREAMING)
            attach = StreamRequest(session_id=self.cursor.session_id)
            await self._consume_stream(client, attach, self.cursor.last_event_id)
        except RECOVERABLE_ERRORS as e:
            self._disconnect(e)
        except FATAL_ERRORS as e:
            self._fail(e)
        return self.state

    async def run(self, text: str, **options) -> CoordinatorState:
        """
        Submit a turn and resume through transient failures

        Resumes back off exponentially. Only consecutive resumes that make
        no progress count against max_resume_attempts.

        Returns:
            COMPLETED or FAILED
        """
        await self.submit(text, **options)

        attempts = 0
        while self.state is CoordinatorState.DISCONNECTED:
            if attempts >= self.max_resume_attempts:
                self._fail(self.failure or Disconnected("Resume attempts exhausted"))
                break
            delay = self.resume_backoff_seconds * (2 ** attempts)
            attempts += 1
            before = self.last_event_id
            logger.info(f"Resuming in {delay:.1f}s (attempt {attempts}/{self.max_resume_attempts})")
            await self._sleep(delay)
            await self.resume()
            if self.last_event_id > before:
                attempts = 0
        return self.state
