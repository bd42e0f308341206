"""
Agent Stream Handler
HTTP surface of the loopback proxy: live SSE stream, NDJSON replay,
session info and liveness
"""
import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import Response
from sse_starlette import EventSourceResponse

from core.codec import NDJSON_MEDIA_TYPE, encode_frame, encode_record, parse_last_event_id
from core.driver import new_session_id
from core.errors import MissingSessionId, SessionNotFound
from core.services import ServerServices
from models.requests import StreamRequest
from models.session import SessionInfo
from utils import diagnostics

logger = logging.getLogger(__name__)

router = APIRouter()


def get_services(request: Request) -> ServerServices:
    return request.app.state.services


async def stream_events(
    services: ServerServices,
    session_id: str,
    queue,
    since: Optional[int],
) -> AsyncIterator[bytes]:
    """
    Live event stream for one attached client

    The queue is subscribed before this generator runs, so replaying from
    the log first and then draining the queue leaves no gap; ids already
    sent are skipped, so nothing is delivered twice.

    Args:
        services: Server services
        session_id: Session to stream
        queue: Broadcaster subscription for session_id
        since: Last-Event-ID of a resuming client, None for a fresh stream
    """
    sent = since or 0
    finished = False
    conv = diagnostics.id_suffix(session_id)
    try:
        if since is not None:
            replayed = await services.event_log.replay(session_id, since)
            diagnostics.log(f"stream resume conv={conv} since={since} replayed={len(replayed)}")
            for event in replayed:
                yield encode_frame(event).encode("utf-8")
                sent = event.event_id

        while True:
            if queue.empty() and not services.driver.is_turn_active(session_id):
                break
            item = await queue.get()
            if item is None:
                break
            if item.event_id <= sent:
                continue
            yield encode_frame(item).encode("utf-8")
            sent = item.event_id
            diagnostics.log(f"stream event conv={conv} id={item.event_id} type={item.type}")
            if item.is_terminal:
                break
        finished = True
    finally:
        services.broadcaster.unsubscribe(session_id, queue)
        if not finished:
            logger.info(f"Live client left conv={conv} lastSent={sent}")
            services.driver.on_client_disconnect(session_id)


@router.get("/healthz")
async def healthz():
    """Liveness probe"""
    return {"status": "ok"}


@router.post("/v1/agent/stream")
async def agent_stream(
    body: StreamRequest,
    last_event_id: Optional[str] = Header(default=None, alias="Last-Event-ID"),
    services: ServerServices = Depends(get_services),
):
    """
    Start a turn, or re-attach to a session's live stream

    A body with text starts a new turn. A body without text is a resume
    attach and needs both session_id and Last-Event-ID. With Last-Event-ID
    every committed event after it is delivered first, in order.
    """
    cursor = parse_last_event_id(last_event_id)
    if cursor is not None and body.session_id is None:
        raise MissingSessionId("Last-Event-ID requires session_id")
    if not body.starts_turn and cursor is None:
        raise HTTPException(status_code=422, detail="text is required unless resuming with Last-Event-ID")
    if not body.starts_turn and not await services.event_log.has_session(body.session_id):
        raise SessionNotFound(body.session_id)

    session_id = body.session_id or new_session_id()
    diagnostics.log(
        f"stream start conv={diagnostics.id_suffix(session_id)} lastEventId={cursor} "
        f"textLen={len(body.text or '')} tools={len(body.allowed_tools)}"
    )

    queue = services.broadcaster.subscribe(session_id)
    try:
        if body.starts_turn:
            services.driver.start_turn(body.model_copy(update={"session_id": session_id}))
    except Exception:
        services.broadcaster.unsubscribe(session_id, queue)
        raise

    return EventSourceResponse(
        stream_events(services, session_id, queue, cursor),
        ping=services.settings.heartbeat_seconds,
    )


@router.get("/v1/sessions/{session_id}/events")
async def session_events(
    session_id: str,
    since: int = Query(default=0, ge=0),
    services: ServerServices = Depends(get_services),
):
    """
    Replay: every event with event_id > since, one JSON record per line
    """
    events = await services.event_log.replay(session_id, since)
    diagnostics.log(f"fetch events conv={diagnostics.id_suffix(session_id)} since={since} count={len(events)}")
    return Response(
        content="".join(encode_record(event) for event in events),
        media_type=NDJSON_MEDIA_TYPE,
    )


@router.get("/v1/sessions/{session_id}", response_model=SessionInfo)
async def session_info(
    session_id: str,
    services: ServerServices = Depends(get_services),
):
    if not await services.event_log.has_session(session_id):
        raise SessionNotFound(session_id)
    session = await services.event_log.get_session(session_id)
    return SessionInfo(
        session=session,
        last_event_id=await services.event_log.last_event_id(session_id),
        turn_active=services.driver.is_turn_active(session_id),
    )
