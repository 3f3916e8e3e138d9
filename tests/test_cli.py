import asyncio
import threading
import time

import pytest

from model_sync import cli
from model_sync.core.cancellation import CancellationToken
from model_sync.core.errors import RunCancelled


def test_second_interrupt_does_not_wait_for_prompt(monkeypatch):
    release = threading.Event()

    def unanswered_confirm(message, default=False):
        release.wait(10)
        return False

    monkeypatch.setattr(cli.typer, "confirm", unanswered_confirm)

    async def interrupt_twice():
        token = CancellationToken(confirm=cli._cancel_prompt(assume_yes=False))
        token.request()
        await asyncio.sleep(0.05)
        assert token.pending_confirmation
        token.request()
        with pytest.raises(RunCancelled):
            await token.sleep(5)
        return token.forced

    started = time.monotonic()
    try:
        assert asyncio.run(interrupt_twice())
        assert time.monotonic() - started < 2
    finally:
        release.set()


def test_confirmed_interrupt_cancels(monkeypatch):
    monkeypatch.setattr(cli.typer, "confirm", lambda message, default=False: True)

    async def interrupt_once():
        token = CancellationToken(confirm=cli._cancel_prompt(assume_yes=False))
        token.request()
        await asyncio.wait_for(token.wait(), timeout=2)
        return token.forced

    assert asyncio.run(interrupt_once()) is False


def test_assume_yes_skips_cancel_prompt():
    assert cli._cancel_prompt(assume_yes=True) is None


def test_timeout_prompt_declines_with_assume_yes():
    assert asyncio.run(cli._timeout_prompt(assume_yes=True)(30.0)) is False
