"""IMAP mailbox access: windowed UNSEEN searches and \\Seen flagging.

Uses aioimaplib so searches, fetches and flag updates suspend the event loop
instead of blocking it. A single connection is shared by every message task of
a batch, so each command runs under a lock.
"""

import asyncio
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from email.header import decode_header, make_header
from email.parser import HeaderParser
from typing import Any, Protocol

import aioimaplib

from activator.config import Settings
from activator.errors import MailboxError
from activator.services.extractor import TEXT_PART, TO_PART, MailMessage

logger = logging.getLogger(__name__)

_FETCH_ITEMS = f"(UID BODY.PEEK[{TO_PART}] BODY.PEEK[{TEXT_PART}])"
_LITERAL_RE = re.compile(rb"BODY\[(?P<section>[^\]]*)\](?:<\d+>)?\s*\{\d+\}\s*$")
_UID_RE = re.compile(rb"\bUID (?P<uid>\d+)")
_FOLDING_RE = re.compile(r"\r?\n[ \t]+")


@dataclass(frozen=True)
class UidWindow:
    start: int
    end: int

    @property
    def next_start(self) -> int:
        return self.end + 1

    def __str__(self) -> str:
        return f"{self.start}:{self.end}"


class MailboxScanner(Protocol):
    async def search(self, subject: str, window: UidWindow) -> list[MailMessage]: ...

    async def flag_seen(self, uid: int) -> None: ...


def build_search_criteria(subject: str, window: UidWindow) -> str:
    escaped = subject.replace("\\", "\\\\").replace('"', '\\"')
    return f'UNSEEN SUBJECT "{escaped}" UID {window}'


def _decode(data: bytes | bytearray) -> str:
    return bytes(data).decode("utf-8", errors="replace")


def parse_header_value(raw: str, name: str) -> str:
    """Return a header's unfolded, decoded value from a raw header block."""
    value = HeaderParser().parsestr(raw).get(name)
    if value is None:
        return ""
    value = _FOLDING_RE.sub(" ", value)
    return str(make_header(decode_header(value))).strip()


def parse_fetch_response(lines: list[Any]) -> tuple[int | None, dict[str, bytes]]:
    """Pull the UID and the literal section bodies out of a FETCH response.

    aioimaplib returns the untagged FETCH line(s) as bytes, and each literal
    ({N}) payload as the following list element.
    """
    uid: int | None = None
    sections: dict[str, bytes] = {}
    for index, line in enumerate(lines):
        if isinstance(line, bytearray) or not isinstance(line, bytes):
            continue
        uid_match = _UID_RE.search(line)
        if uid_match and uid is None:
            uid = int(uid_match.group("uid"))
        literal = _LITERAL_RE.search(line)
        if literal and index + 1 < len(lines):
            section = literal.group("section").decode("ascii", errors="replace")
            section = section.replace('"', "").upper()
            sections[section] = bytes(lines[index + 1])
    return uid, sections


def parse_search_response(lines: list[Any]) -> list[int]:
    uids: list[int] = []
    for line in lines:
        if not isinstance(line, (bytes, bytearray)):
            continue
        tokens = bytes(line).split()
        if tokens and all(token.isdigit() for token in tokens):
            uids.extend(int(token) for token in tokens)
    return uids


class ImapMailbox:
    """MailboxScanner backed by a single aioimaplib connection."""

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        *,
        mailbox: str = "INBOX",
        use_ssl: bool = True,
        timeout: int = 30,
        client_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._user = user
        self._password = password
        self._mailbox = mailbox
        self._use_ssl = use_ssl
        self._timeout = timeout
        self._client_factory = client_factory or self._default_client
        self._client: Any = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ImapMailbox":
        return cls(
            settings.imap_host,
            settings.imap_port,
            settings.imap_user,
            settings.imap_password,
            mailbox=settings.imap_mailbox,
            use_ssl=settings.imap_use_ssl,
            timeout=settings.imap_timeout,
        )

    def _default_client(self) -> Any:
        if self._use_ssl:
            return aioimaplib.IMAP4_SSL(host=self._host, port=self._port, timeout=self._timeout)
        return aioimaplib.IMAP4(host=self._host, port=self._port, timeout=self._timeout)

    async def __aenter__(self) -> "ImapMailbox":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def connect(self) -> None:
        logger.info("Connecting to IMAP server %s:%d...", self._host, self._port)
        self._client = self._client_factory()
        try:
            await self._client.wait_hello_from_server()
        except (asyncio.TimeoutError, OSError) as e:
            raise MailboxError(f"Cannot reach IMAP server {self._host}:{self._port}: {e}") from e
        await self._command("LOGIN", self._client.login(self._user, self._password))
        logger.debug("Connected! Opening the %s folder...", self._mailbox)
        await self._command("SELECT", self._client.select(self._mailbox))

    async def close(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        try:
            await client.logout()
        except (aioimaplib.AioImapException, asyncio.TimeoutError, OSError) as e:
            logger.warning("IMAP logout failed: %s", e)

    async def _command(self, name: str, awaitable: Any) -> Any:
        try:
            response = await awaitable
        except (aioimaplib.AioImapException, asyncio.TimeoutError, OSError) as e:
            raise MailboxError(f"IMAP {name} failed: {e}") from e
        if response.result != "OK":
            raise MailboxError(f"IMAP {name} returned {response.result}: {response.lines!r}")
        return response

    def _require_client(self) -> Any:
        if self._client is None:
            raise MailboxError("Mailbox is not connected")
        return self._client

    async def search(self, subject: str, window: UidWindow) -> list[MailMessage]:
        client = self._require_client()
        criteria = build_search_criteria(subject, window)
        logger.info("Searching for unread emails in UID window %s...", window)

        async with self._lock:
            response = await self._command("SEARCH", client.uid_search(criteria))
            uids = parse_search_response(response.lines)
            messages = []
            for uid in uids:
                fetched = await self._command("FETCH", client.uid("fetch", str(uid), _FETCH_ITEMS))
                _, sections = parse_fetch_response(fetched.lines)
                raw_to = _decode(sections.get(TO_PART, b""))
                parts = {TO_PART: parse_header_value(raw_to, "To")}
                if TEXT_PART in sections:
                    parts[TEXT_PART] = _decode(sections[TEXT_PART])
                messages.append(MailMessage(uid=uid, parts=parts))

        logger.debug("UID window %s returned %d messages", window, len(messages))
        return messages

    async def flag_seen(self, uid: int) -> None:
        client = self._require_client()
        async with self._lock:
            await self._command("STORE", client.uid("store", str(uid), "+FLAGS", "(\\Seen)"))
        logger.debug("Email %d marked as read.", uid)
