"""
Server Services
The explicit bundle of server-side collaborators handed to the HTTP layer
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from config import ServerSettings
from core.agent_runners import AgentRunner, build_runner
from core.broadcaster import EventBroadcaster
from core.driver import AgentQueryDriver
from core.event_log import EventLog
from models.events import utcnow


@dataclass
class ServerServices:
    settings: ServerSettings
    event_log: EventLog
    broadcaster: EventBroadcaster
    driver: AgentQueryDriver
    started_at: datetime = field(default_factory=utcnow)

    @classmethod
    async def create(cls, settings: ServerSettings, runner: Optional[AgentRunner] = None) -> "ServerServices":
        """
        Open the event log and wire the driver to it

        Args:
            settings: Server settings
            runner: Computation backend, picked from settings when None
        """
        event_log = EventLog(settings.db_path, buffer_size=settings.replay_buffer_size)
        await event_log.init_db()
        broadcaster = EventBroadcaster()
        driver = AgentQueryDriver(
            event_log,
            broadcaster,
            runner or build_runner(settings),
            disconnect_policy=settings.disconnect_policy,
        )
        return cls(settings=settings, event_log=event_log, broadcaster=broadcaster, driver=driver)

    async def close(self):
        await self.driver.shutdown()
        await self.event_log.close()
