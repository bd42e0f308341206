"""
Proxy Stream Client
HTTP client for the proxy, talking to it through the tunnel's local address
"""
import logging
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

import httpx

from core.codec import LAST_EVENT_ID_HEADER, SSE_MEDIA_TYPE, FrameParser, decode_record
from core.errors import Disconnected, MalformedFrame, RequestRejected, SessionNotFound, StreamTimeout
from models.events import BaseEvent
from models.requests import StreamRequest
from utils import diagnostics

logger = logging.getLogger(__name__)

PROXY_VERSION_HEADER = "X-Proxy-Version"
PROXY_STARTED_AT_HEADER = "X-Proxy-Started-At"


@dataclass
class ProxyResponseInfo:
    """Identity of the proxy process that answered a request"""
    status_code: int
    version: Optional[str] = None
    started_at: Optional[str] = None

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ProxyResponseInfo":
        return cls(
            status_code=response.status_code,
            version=response.headers.get(PROXY_VERSION_HEADER),
            started_at=response.headers.get(PROXY_STARTED_AT_HEADER),
        )


class ProxyStreamClient:
    """
    Live stream and replay requests against one proxy base URL

    Read timeout doubles as the stream idle timeout: heartbeats reset it,
    so only a silent connection trips it.
    """

    def __init__(
        self,
        base_url: str,
        idle_timeout: float = 45.0,
        connect_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: e.g. http://127.0.0.1:<tunnel port>
            idle_timeout: Seconds without any frame before the stream counts as lost
            connect_timeout: Seconds allowed to connect
            transport: httpx transport override (tests)
        """
        self.base_url = base_url
        self.last_response_info: Optional[ProxyResponseInfo] = None
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(
                connect=connect_timeout,
                read=idle_timeout,
                write=connect_timeout,
                pool=connect_timeout,
            ),
            transport=transport,
        )

    async def stream(self, request: StreamRequest, last_event_id: Optional[int] = None) -> AsyncIterator[BaseEvent]:
        """
        POST /v1/agent/stream and yield events as frames arrive

        Args:
            request: Stream-start request, or a resume attach without text
            last_event_id: Cursor sent as Last-Event-ID when resuming

        Raises:
            SessionNotFound: 404 for the requested session
            RequestRejected: Any other client error status
            StreamTimeout: Idle timeout expired
            Disconnected: Connection failed or dropped, or a server error
        """
        headers = {"Accept": SSE_MEDIA_TYPE}
        if last_event_id is not None:
            headers[LAST_EVENT_ID_HEADER] = str(last_event_id)

        diagnostics.log(
            f"POST /v1/agent/stream conv={diagnostics.id_suffix(request.session_id)} "
            f"lastEventId={last_event_id} textLen={len(request.text or '')}"
        )
        parser = FrameParser()
        try:
            async with self._client.stream(
                "POST", "/v1/agent/stream", json=request.json_body(), headers=headers
            ) as response:
                self._record(response)
                if response.status_code >= 400:
                    await response.aread()
                    self._raise_for_status(response, request.session_id)

                async for chunk in response.aiter_text():
                    for event in parser.feed(chunk):
                        yield event
                for event in parser.flush():
                    yield event
        except httpx.TimeoutException as e:
            raise StreamTimeout(f"No frame within the idle timeout: {e}") from e
        except httpx.TransportError as e:
            raise Disconnected(f"Stream connection lost: {e}") from e
        finally:
            if parser.dropped:
                logger.warning(f"Dropped {parser.dropped} malformed frame(s)")

    async def fetch_events(self, session_id: str, since: int) -> List[BaseEvent]:
        """
        GET /v1/sessions/{session_id}/events?since=<since>

        Returns:
            Events with event_id > since, in order; undecodable records are skipped
        """
        try:
            response = await self._client.get(
                f"/v1/sessions/{session_id}/events", params={"since": since}
            )
        except httpx.TimeoutException as e:
            raise StreamTimeout(f"Replay request timed out: {e}") from e
        except httpx.TransportError as e:
            raise Disconnected(f"Replay request failed: {e}") from e

        self._record(response)
        if response.status_code >= 400:
            self._raise_for_status(response, session_id)

        events: List[BaseEvent] = []
        for line in response.text.splitlines():
            if not line.strip():
                continue
            try:
                events.append(decode_record(line))
            except MalformedFrame as e:
                logger.warning(f"Skipping malformed replay record: {e}")
        diagnostics.log(f"fetch events conv={diagnostics.id_suffix(session_id)} since={since} count={len(events)}")
        return events

    def _record(self, response: httpx.Response):
        self.last_response_info = ProxyResponseInfo.from_response(response)
        diagnostics.log(
            f"response status={response.status_code} "
            f"proxyVersion={self.last_response_info.version} "
            f"proxyStartedAt={self.last_response_info.started_at}"
        )

    def _raise_for_status(self, response: httpx.Response, session_id: Optional[str]):
        status = response.status_code
        body = response.text[:500]
        if status == 404 and session_id:
            raise SessionNotFound(session_id)
        if status < 500:
            raise RequestRejected(status, body)
        raise Disconnected(f"Proxy HTTP {status}: {body}")

    async def close(self):
        await self._client.aclose()
