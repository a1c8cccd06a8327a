"""Verification workflow: drive one activation link to a terminal outcome.

    Fetching -> Activated | AlreadyActivated
    Fetching -> RateLimited -> wait -> Fetching
    Fetching -> TokenExpired -> RequestNewEmail -> EmailResent
                                       \\-> wait -> re-navigate -> RequestNewEmail

Rate-limit and resubmission loops are unbounded unless a ceiling is
configured. Backoff waits return early when the stop event is set, in which
case the workflow reports ``Aborted`` and the caller must not persist anything.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import ClassVar

from activator.config import Settings
from activator.errors import (
    FormSubmissionError,
    RateLimited,
    RetryBudgetExhausted,
    TransportError,
    UnrecognizedPage,
)
from activator.models.account import ActivationStatus
from activator.services.transport import (
    IDENTITY,
    SECRET,
    VerificationSession,
    VerificationTransport,
)

logger = logging.getLogger(__name__)

ACCOUNT_ACTIVATED = "Your account is now active."
ACCOUNT_ALREADY_ACTIVATED = "Your account has already been activated."
INVALID_CONFIRMATION_TOKEN = "We cannot find an account matching the confirmation email."
VERIFICATION_EMAIL_SENT = "We have sent you an email to verify your account."


@dataclass
class VerificationTask:
    link: str
    account_id: uuid.UUID
    login: str
    password: str
    attempt: int = 0
    submissions: int = 0


@dataclass(frozen=True)
class VerificationOutcome:
    account_id: uuid.UUID
    attempts: int = 1
    submissions: int = 0

    # Status to persist, None when nothing must be written
    status: ClassVar[ActivationStatus | None] = None


@dataclass(frozen=True)
class Activated(VerificationOutcome):
    status: ClassVar[ActivationStatus | None] = ActivationStatus.ACTIVATED


@dataclass(frozen=True)
class AlreadyActivated(VerificationOutcome):
    status: ClassVar[ActivationStatus | None] = ActivationStatus.ACTIVATED


@dataclass(frozen=True)
class TokenExpiredEmailResent(VerificationOutcome):
    status: ClassVar[ActivationStatus | None] = ActivationStatus.NOT_ACTIVATED


@dataclass(frozen=True)
class Aborted(VerificationOutcome):
    status: ClassVar[ActivationStatus | None] = None


class VerificationWorkflow:
    def __init__(
        self,
        transport: VerificationTransport,
        *,
        rate_limit_backoff: float = 65.0,
        resend_retry_interval: float = 60.0,
        max_rate_limit_retries: int | None = None,
        max_resend_attempts: int | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self._transport = transport
        self._rate_limit_backoff = rate_limit_backoff
        self._resend_retry_interval = resend_retry_interval
        self._max_rate_limit_retries = max_rate_limit_retries
        self._max_resend_attempts = max_resend_attempts
        self._stop = stop_event

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: VerificationTransport,
        stop_event: asyncio.Event | None = None,
    ) -> "VerificationWorkflow":
        return cls(
            transport,
            rate_limit_backoff=settings.rate_limit_backoff_seconds,
            resend_retry_interval=settings.resend_retry_seconds,
            max_rate_limit_retries=settings.max_rate_limit_retries,
            max_resend_attempts=settings.max_resend_attempts,
            stop_event=stop_event,
        )

    @property
    def stopping(self) -> bool:
        return self._stop is not None and self._stop.is_set()

    async def _wait(self, seconds: float) -> bool:
        """Sleep for ``seconds``. Returns False if a stop was requested meanwhile."""
        if self._stop is None:
            await asyncio.sleep(seconds)
            return True
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False

    async def verify(
        self, link: str, account_id: uuid.UUID, login: str, password: str
    ) -> VerificationOutcome:
        task = VerificationTask(link=link, account_id=account_id, login=login, password=password)

        while True:
            if self.stopping:
                return Aborted(account_id, task.attempt)
            task.attempt += 1
            logger.debug("Fetching activation link for %s (attempt %d)", login, task.attempt)
            try:
                page = await self._transport.fetch(task.link)
                break
            except RateLimited:
                retries = task.attempt
                if self._max_rate_limit_retries is not None and retries > self._max_rate_limit_retries:
                    raise RetryBudgetExhausted(
                        f"Still rate limited after {retries} attempts for account {login}"
                    )
                logger.error(
                    "Rate limited while activating the account %s (%s). Waiting %ss...",
                    login, account_id, self._rate_limit_backoff,
                )
                if not await self._wait(self._rate_limit_backoff):
                    return Aborted(account_id, task.attempt)

        try:
            content = page.content
            if ACCOUNT_ACTIVATED in content:
                logger.info("The account %s (%s) has been activated.", login, account_id)
                return Activated(account_id, task.attempt)
            if ACCOUNT_ALREADY_ACTIVATED in content:
                logger.info("The account %s (%s) has already been activated.", login, account_id)
                return AlreadyActivated(account_id, task.attempt)
            if INVALID_CONFIRMATION_TOKEN in content:
                logger.info("The activation link for %s (%s) has already expired.", login, account_id)
                return await self._request_new_email(page.session, task)
            raise UnrecognizedPage(
                f"Activation page for {login} matched no known marker: {content[:200]!r}"
            )
        finally:
            await page.session.close()

    async def _request_new_email(
        self, session: VerificationSession, task: VerificationTask
    ) -> VerificationOutcome:
        while True:
            task.submissions += 1
            logger.info("Asking a new verification email for the account %s...", task.login)
            try:
                content = await session.fill_and_submit({IDENTITY: task.login, SECRET: task.password})
            except FormSubmissionError as e:
                logger.warning("Resubmission for %s did not land: %s", task.login, e)
                content = ""

            if VERIFICATION_EMAIL_SENT in content:
                logger.info(
                    "Success requesting the new verification email for the account %s!",
                    task.login,
                )
                return TokenExpiredEmailResent(task.account_id, task.attempt, task.submissions)

            if self._max_resend_attempts is not None and task.submissions >= self._max_resend_attempts:
                raise RetryBudgetExhausted(
                    f"No resend confirmation after {task.submissions} submissions for account {task.login}"
                )

            logger.info(
                "No resend confirmation for %s, retrying in %ss", task.login, self._resend_retry_interval
            )
            if not await self._wait(self._resend_retry_interval):
                return Aborted(task.account_id, task.attempt, task.submissions)

            try:
                await session.navigate(task.link)
            except RateLimited:
                logger.error("Rate limited while reloading the activation page for %s", task.login)
            except TransportError as e:
                logger.warning("Reloading the activation page for %s failed: %s", task.login, e)
