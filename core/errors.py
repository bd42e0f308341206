"""
Error taxonomy
Tunnel, protocol, session and transport failures shared by server and client
"""
from typing import Optional


class StreamProxyError(Exception):
    """Base class for every error raised by the proxy core"""


# Tunnel errors are scoped to one relay channel or one tunnel and never
# crash the process.
class TunnelError(StreamProxyError):
    pass


class ConnectFailed(TunnelError):
    """Opening a forwarding channel over the authenticated connection failed"""


class RelayFailed(TunnelError):
    """Byte relay between the local socket and the forwarding channel broke"""


class TunnelClosed(TunnelError):
    """The tunnel was stopped, or its authenticated connection dropped"""


class ProtocolError(StreamProxyError):
    pass


class MalformedFrame(ProtocolError):
    """
    A stream frame or replay record could not be decoded

    Args:
        message: What was wrong with the frame
        raw: The offending text, kept for diagnostics
    """

    def __init__(self, message: str, raw: Optional[str] = None):
        super().__init__(message)
        self.raw = raw


class MissingSessionId(ProtocolError):
    """A resume request did not name the session it resumes"""


class RequestRejected(ProtocolError):
    """
    The server refused a request with a client error status

    Args:
        status_code: HTTP status returned by the server
        body: Response body, trimmed
    """

    def __init__(self, status_code: int, body: str = ""):
        super().__init__(f"Proxy HTTP {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class SessionError(StreamProxyError):
    pass


class SessionNotFound(SessionError):
    """No event was ever appended for the session"""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class WriteConflict(SessionError):
    """Two appends produced the same event id; append serialization is broken"""


class TurnInProgress(SessionError):
    """A turn is already running for the session"""

    def __init__(self, session_id: str):
        super().__init__(f"A turn is already running for session {session_id}")
        self.session_id = session_id


class TransportError(StreamProxyError):
    pass


class Disconnected(TransportError):
    """The live stream or its tunnel went away before the turn finished"""


class StreamTimeout(TransportError):
    """No frame (content or heartbeat) arrived within the idle timeout"""


class AgentRunnerError(StreamProxyError):
    """The underlying computation failed and cannot continue the turn"""
