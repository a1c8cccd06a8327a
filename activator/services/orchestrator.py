"""Batch loop: unseen activation emails -> account rows -> verification -> \\Seen.

Messages of one UID window are processed concurrently; the next window is only
searched once every task of the current one has finished. A message is flagged
seen only after its account row was updated, so a crash leaves it unseen and
the next run reprocesses it (idempotent by account state).
"""

import asyncio
import enum
import logging
import re
from dataclasses import dataclass, field

from activator.config import Settings
from activator.errors import ExtractionError, MailboxError, StoreError, TransportFatal
from activator.services.accounts import AccountStore
from activator.services.extractor import MailMessage, compile_link_pattern, extract_from_message
from activator.services.mailbox import MailboxScanner, UidWindow
from activator.services.workflow import VerificationWorkflow

logger = logging.getLogger(__name__)


class MessageResult(enum.Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class BatchResult:
    window: UidWindow
    found: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    aborted: int = 0

    @property
    def next_cursor(self) -> int:
        return self.window.next_start

    def count(self, result: MessageResult) -> None:
        setattr(self, result.value, getattr(self, result.value) + 1)


@dataclass
class RunSummary:
    batches: list[BatchResult] = field(default_factory=list)

    def add(self, batch: BatchResult) -> None:
        self.batches.append(batch)

    def _total(self, name: str) -> int:
        return sum(getattr(batch, name) for batch in self.batches)

    @property
    def found(self) -> int:
        return self._total("found")

    @property
    def processed(self) -> int:
        return self._total("processed")

    @property
    def skipped(self) -> int:
        return self._total("skipped")

    @property
    def failed(self) -> int:
        return self._total("failed")

    @property
    def aborted(self) -> int:
        return self._total("aborted")


class BatchProcessor:
    def __init__(
        self,
        mailbox: MailboxScanner,
        store: AccountStore,
        workflow: VerificationWorkflow,
        *,
        subject: str,
        batch_size: int,
        default_password: str,
        halt_on_fatal: bool = False,
        link_pattern: re.Pattern[str] | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self._mailbox = mailbox
        self._store = store
        self._workflow = workflow
        self._subject = subject
        self._batch_size = batch_size
        self._default_password = default_password
        self._halt_on_fatal = halt_on_fatal
        self._link_pattern = link_pattern
        self._stop = stop_event

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        mailbox: MailboxScanner,
        store: AccountStore,
        workflow: VerificationWorkflow,
        stop_event: asyncio.Event | None = None,
    ) -> "BatchProcessor":
        return cls(
            mailbox,
            store,
            workflow,
            subject=settings.imap_subject,
            batch_size=settings.imap_batch,
            default_password=settings.default_password,
            halt_on_fatal=settings.halt_on_fatal,
            link_pattern=compile_link_pattern(settings.activation_link_prefix),
            stop_event=stop_event,
        )

    def window_for(self, start: int) -> UidWindow:
        return UidWindow(start=start, end=start + self._batch_size)

    async def process_message(self, message: MailMessage) -> MessageResult:
        uid = message.uid
        logger.debug("Reading message %s", uid)
        try:
            parsed = extract_from_message(message, self._link_pattern)
        except ExtractionError as e:
            logger.error("Skipping message %s: %s", uid, e)
            return MessageResult.SKIPPED

        try:
            account = await self._store.ensure_account(
                parsed.login, parsed.address, self._default_password
            )
            outcome = await self._workflow.verify(
                parsed.link, account.account_id, parsed.login, account.password
            )
            if outcome.status is None:
                logger.warning("Verification of %s (message %s) aborted, leaving it unseen", parsed.login, uid)
                return MessageResult.ABORTED

            await self._store.update_activation(account.account_id, outcome.status)
            await self._mailbox.flag_seen(uid)
        except TransportFatal as e:
            logger.error("Verification of %s (message %s) failed: %s", parsed.login, uid, e)
            if self._halt_on_fatal:
                raise
            return MessageResult.FAILED
        except (StoreError, MailboxError):
            raise
        except Exception:
            logger.exception("Unexpected error processing %s (message %s)", parsed.login, uid)
            return MessageResult.FAILED

        logger.info(
            "Account %s processed: %s, message %s marked as read",
            parsed.login, type(outcome).__name__, uid,
        )
        return MessageResult.PROCESSED

    async def process_batch(self, start: int) -> BatchResult:
        window = self.window_for(start)
        messages = await self._mailbox.search(self._subject, window)
        batch = BatchResult(window=window, found=len(messages))
        if not messages:
            return batch

        logger.info("There are %d unread activation messages.", len(messages))
        results = await asyncio.gather(
            *(self.process_message(message) for message in messages),
            return_exceptions=True,
        )

        fatal: TransportFatal | None = None
        error: BaseException | None = None
        for message, result in zip(messages, results):
            if isinstance(result, MessageResult):
                batch.count(result)
            elif isinstance(result, TransportFatal):
                batch.failed += 1
                fatal = fatal or result
            else:
                logger.error("Message %s hit a process-level error: %r", message.uid, result)
                error = error or result

        logger.info(
            "UID window %s: %d processed, %d skipped, %d failed, %d aborted",
            window, batch.processed, batch.skipped, batch.failed, batch.aborted,
        )
        if error is not None:
            raise error
        if fatal is not None:
            raise fatal
        return batch

    async def run(self, start: int) -> RunSummary:
        summary = RunSummary()
        cursor = start
        while True:
            if self._stop is not None and self._stop.is_set():
                logger.info("Stop requested, not searching past UID %d", cursor - 1)
                break
            batch = await self.process_batch(cursor)
            summary.add(batch)
            if batch.found == 0:
                break
            cursor = batch.next_cursor

        logger.info(
            "Done. %d messages marked as read, %d skipped, %d failed.",
            summary.processed, summary.skipped, summary.failed,
        )
        return summary
