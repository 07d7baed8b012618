"""Tests for CancellationToken."""

from __future__ import annotations

import threading

import pytest

from keelhaul.core.cancellation import CancellationToken
from keelhaul.core.errors import Cancelled


class TestCancellationToken:
    def test_initially_not_cancelled(self):
        token = CancellationToken()
        assert token.cancelled is False
        token.raise_if_cancelled()

    def test_cancel_sets_flag_and_reason(self):
        token = CancellationToken()
        token.cancel("operator abort")
        assert token.cancelled
        with pytest.raises(Cancelled, match="operator abort"):
            token.raise_if_cancelled()

    def test_callbacks_fire_once(self):
        token = CancellationToken()
        fired: list[str] = []
        token.on_cancel(lambda: fired.append("a"))
        token.cancel()
        token.cancel()
        assert fired == ["a"]

    def test_callback_after_cancel_fires_immediately(self):
        token = CancellationToken()
        token.cancel()
        fired: list[str] = []
        token.on_cancel(lambda: fired.append("late"))
        assert fired == ["late"]

    def test_unregister(self):
        token = CancellationToken()
        fired: list[str] = []
        unregister = token.on_cancel(lambda: fired.append("x"))
        unregister()
        token.cancel()
        assert fired == []

    def test_wait_returns_early_when_cancelled_from_another_thread(self):
        token = CancellationToken()
        timer = threading.Timer(0.05, token.cancel)
        timer.start()
        try:
            assert token.wait(5.0) is True
        finally:
            timer.cancel()

    def test_wait_times_out(self):
        assert CancellationToken().wait(0.01) is False
