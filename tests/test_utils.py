"""
Diagnostics helper tests
"""
import logging

from utils import diagnostics


def test_id_suffix():
    assert diagnostics.id_suffix("conversation-abc123") == "...abc123"
    assert diagnostics.id_suffix("abcdef", length=3) == "...def"
    assert diagnostics.id_suffix("") == "nil"
    assert diagnostics.id_suffix(None) == "nil"


def test_summarize_counts_utf8_bytes():
    assert diagnostics.summarize("héllo") == "lineBytes=6"


def test_debug_flag(monkeypatch):
    monkeypatch.setenv("STREAM_DEBUG", "yes")
    assert diagnostics.is_stream_debug_enabled()
    monkeypatch.setenv("STREAM_DEBUG", "0")
    assert not diagnostics.is_stream_debug_enabled()


def test_log_is_silent_unless_enabled(monkeypatch, caplog):
    caplog.set_level(logging.INFO, logger="stream.diagnostics")

    monkeypatch.delenv("STREAM_DEBUG", raising=False)
    diagnostics.log("hidden")
    assert "hidden" not in caplog.text

    monkeypatch.setenv("STREAM_DEBUG", "1")
    diagnostics.log("shown")
    diagnostics.log_raw("frame", "id: 1")
    assert "[StreamDebug] shown" in caplog.text
    assert "frame BEGIN" in caplog.text
