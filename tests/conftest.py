"""
Shared test fixtures
"""
import pytest
from sse_starlette import sse

from config import ServerSettings
from core.agent_runners import EchoRunner
from core.event_log import EventLog
from core.services import ServerServices


@pytest.fixture(autouse=True)
def reset_sse_app_status():
    """sse-starlette keeps a module-level exit event bound to the first event loop"""
    app_status = getattr(sse, "AppStatus", None)
    if hasattr(app_status, "should_exit_event"):
        app_status.should_exit_event = None
    yield
    if hasattr(app_status, "should_exit_event"):
        app_status.should_exit_event = None


@pytest.fixture
async def event_log(tmp_path):
    """Event log on a throwaway database"""
    log = EventLog(str(tmp_path / "events.db"), buffer_size=8)
    await log.init_db()
    yield log
    await log.close()


@pytest.fixture
def server_settings(tmp_path):
    return ServerSettings(
        db_path=str(tmp_path / "proxy.db"),
        heartbeat_seconds=0.05,
        agent_runner="echo",
        proxy_version="test-1",
    )


@pytest.fixture
async def services(server_settings):
    """Server services wired to the deterministic echo backend"""
    bundle = await ServerServices.create(server_settings, runner=EchoRunner())
    yield bundle
    await bundle.close()
