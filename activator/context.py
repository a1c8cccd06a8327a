"""Process-wide resources, created once at startup and torn down at exit."""

import asyncio
import logging
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncEngine

from activator.config import Settings
from activator.database import create_engine, create_session_factory
from activator.services.accounts import AccountStore
from activator.services.mailbox import ImapMailbox
from activator.services.orchestrator import BatchProcessor
from activator.services.transport import VerificationTransport, build_transport
from activator.services.workflow import VerificationWorkflow

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    engine: AsyncEngine
    store: AccountStore
    mailbox: ImapMailbox
    transport: VerificationTransport
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)

    @classmethod
    def create(cls, settings: Settings) -> "AppContext":
        engine = create_engine(settings.database_url, echo=settings.log_level == "DEBUG")
        return cls(
            settings=settings,
            engine=engine,
            store=AccountStore(create_session_factory(engine)),
            mailbox=ImapMailbox.from_settings(settings),
            transport=build_transport(settings),
        )

    def build_processor(self) -> BatchProcessor:
        workflow = VerificationWorkflow.from_settings(self.settings, self.transport, self.stop_event)
        return BatchProcessor.from_settings(
            self.settings, self.mailbox, self.store, workflow, self.stop_event
        )

    async def aclose(self) -> None:
        try:
            await self.transport.aclose()
        except Exception:
            logger.exception("Failed to shut down verification transport")
        await self.mailbox.close()
        await self.engine.dispose()
