"""Tests for process exit policy."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from activator.config import Settings
from activator.errors import MailboxError, StoreError, TransportFatal
from activator.main import run
from activator.services.orchestrator import RunSummary


class _FakeContext:
    def __init__(self, run_result: object = None, connect_error: Exception | None = None) -> None:
        self.stop_event = asyncio.Event()
        self.mailbox = SimpleNamespace(connect=AsyncMock(side_effect=connect_error))
        if isinstance(run_result, Exception):
            self.processor = SimpleNamespace(run=AsyncMock(side_effect=run_result))
        else:
            self.processor = SimpleNamespace(run=AsyncMock(return_value=run_result or RunSummary()))
        self.closed = False

    def build_processor(self) -> SimpleNamespace:
        return self.processor

    async def aclose(self) -> None:
        self.closed = True


async def _run_with(ctx: _FakeContext, settings: Settings) -> int:
    with patch("activator.main.AppContext.create", return_value=ctx), \
         patch("activator.main._install_signal_handlers"):
        return await run(settings)


@pytest.mark.asyncio
async def test_exhausted_mailbox_exits_zero(settings: Settings) -> None:
    ctx = _FakeContext()
    assert await _run_with(ctx, settings) == 0
    ctx.processor.run.assert_awaited_once_with(settings.imap_start)
    assert ctx.closed


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [StoreError("db down"), MailboxError("imap gone"), TransportFatal("halted")],
)
async def test_process_level_failures_exit_nonzero(settings: Settings, error: Exception) -> None:
    ctx = _FakeContext(run_result=error)
    assert await _run_with(ctx, settings) == 1
    assert ctx.closed


@pytest.mark.asyncio
async def test_mailbox_connect_failure_exits_nonzero(settings: Settings) -> None:
    ctx = _FakeContext(connect_error=MailboxError("auth failed"))
    assert await _run_with(ctx, settings) == 1
    ctx.processor.run.assert_not_awaited()
    assert ctx.closed
