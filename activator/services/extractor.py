"""Activation email parsing: recipient address, login and activation link."""

import re
from dataclasses import dataclass, field

from activator.errors import ExtractionError

DEFAULT_LINK_PREFIX = "https://club"

# Fetched body sections, keyed by their IMAP section name
TO_PART = "HEADER.FIELDS (TO)"
TEXT_PART = "TEXT"

_ANGLE_ADDRESS_RE = re.compile(r"<([^<>]*)>")


@dataclass
class MailMessage:
    uid: int
    parts: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ActivationEmail:
    login: str
    address: str
    link: str


def compile_link_pattern(prefix: str = DEFAULT_LINK_PREFIX) -> re.Pattern[str]:
    """Pattern for an activation URL under ``prefix``, e.g. ``https://club...``."""
    return re.compile(rf"({re.escape(prefix)}[a-z0-9./\-]*)\b")


_DEFAULT_LINK_RE = compile_link_pattern()


def parse_address(to_header: str) -> str:
    """Strip angle brackets (and any display name before them) from a To value."""
    value = to_header.strip()
    match = _ANGLE_ADDRESS_RE.search(value)
    if match:
        value = match.group(1)
    else:
        value = value.split(",", 1)[0]  # first recipient only
    value = value.replace("<", "").replace(">", "").strip()
    if "@" not in value:
        raise ExtractionError(f"No recipient address in To header {to_header!r}")
    return value


def extract_activation(
    to_header: str,
    body: str,
    link_pattern: re.Pattern[str] | None = None,
) -> ActivationEmail:
    address = parse_address(to_header)
    login = address.split("@", 1)[0]
    if not login:
        raise ExtractionError(f"Empty login in address {address!r}")

    match = (link_pattern or _DEFAULT_LINK_RE).search(body)
    if match is None:
        raise ExtractionError(f"No activation link in message for {address}")

    return ActivationEmail(login=login, address=address, link=match.group(1))


def extract_from_message(
    message: MailMessage, link_pattern: re.Pattern[str] | None = None
) -> ActivationEmail:
    to_header = message.parts.get(TO_PART)
    body = message.parts.get(TEXT_PART)
    if not to_header:
        raise ExtractionError(f"Message {message.uid} has no To header")
    if body is None:
        raise ExtractionError(f"Message {message.uid} has no text body")
    return extract_activation(to_header, body, link_pattern)
