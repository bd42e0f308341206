"""
Stream Diagnostics
Opt-in wire-level logging for the live stream, replay and tunnel relays
"""
import logging
import os

logger = logging.getLogger("stream.diagnostics")


def is_stream_debug_enabled() -> bool:
    return os.getenv("STREAM_DEBUG", "false").lower() in ("1", "true", "yes", "on")


def id_suffix(value: str, length: int = 6) -> str:
    """
    Shorten an id for log lines

    Args:
        value: Session or conversation id
        length: Number of trailing characters kept

    Returns:
        "...abc123" style suffix, or "nil" for empty ids
    """
    if not value:
        return "nil"
    return f"...{value[-length:]}"


def summarize(line: str) -> str:
    """Size-only summary of a payload line, safe to log without its content"""
    return f"lineBytes={len(line.encode('utf-8'))}"


def log(message: str):
    if not is_stream_debug_enabled():
        return
    logger.info("[StreamDebug] %s", message)


def log_raw(label: str, payload: str):
    """Dump a raw chunk between BEGIN/END markers when STREAM_DEBUG is on"""
    if not is_stream_debug_enabled():
        return
    logger.info("[StreamDebugRaw] %s bytes=%d", label, len(payload.encode("utf-8")))
    logger.info("[StreamDebugRaw] %s BEGIN\n%s\n[StreamDebugRaw] %s END", label, payload, label)
