"""Unit tests for LifecycleEvents."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from hopper.core.events import LifecycleEvent, LifecycleEvents

pytestmark = pytest.mark.unit


class TestSubscription:
    def test_emit_calls_listeners_with_args(self) -> None:
        events = LifecycleEvents()
        first, second = MagicMock(), MagicMock()
        events.on(LifecycleEvent.READY, first)
        events.on('ready', second)

        events.emit(LifecycleEvent.READY, 'resize')

        first.assert_called_once_with('resize')
        second.assert_called_once_with('resize')

    def test_off_removes_listener(self) -> None:
        events = LifecycleEvents()
        listener = MagicMock()
        events.on(LifecycleEvent.CLOSE, listener)
        events.off(LifecycleEvent.CLOSE, listener)
        events.off(LifecycleEvent.CLOSE, listener)

        events.emit(LifecycleEvent.CLOSE)

        listener.assert_not_called()
        assert events.listeners(LifecycleEvent.CLOSE) == []

    def test_unknown_event_name_rejected(self) -> None:
        with pytest.raises(ValueError):
            LifecycleEvents().on('drained', MagicMock())

    def test_on_returns_callback(self) -> None:
        events = LifecycleEvents()
        listener = MagicMock()
        assert events.on(LifecycleEvent.ERROR, listener) is listener


class TestListenerFailures:
    def test_failing_listener_does_not_stop_others(self) -> None:
        events = LifecycleEvents()
        after = MagicMock()
        events.on(LifecycleEvent.ERROR, MagicMock(side_effect=RuntimeError('listener bug')))
        events.on(LifecycleEvent.ERROR, after)

        with patch('hopper.core.events.logger') as mock_logger:
            events.emit(LifecycleEvent.ERROR, ValueError('x'))

        after.assert_called_once()
        mock_logger.exception.assert_called_once()

    @pytest.mark.asyncio
    async def test_async_listener_scheduled(self) -> None:
        events = LifecycleEvents()
        seen: list[str] = []

        async def listener(name: str) -> None:
            seen.append(name)

        events.on(LifecycleEvent.READY, listener)
        events.emit(LifecycleEvent.READY, 'resize')
        await asyncio.sleep(0)

        assert seen == ['resize']


class TestForward:
    def test_forwards_selected_events(self) -> None:
        source, target = LifecycleEvents(), LifecycleEvents()
        ready, close = MagicMock(), MagicMock()
        target.on(LifecycleEvent.READY, ready)
        target.on(LifecycleEvent.CLOSE, close)

        source.forward(target, (LifecycleEvent.READY,))
        source.emit(LifecycleEvent.READY, 'resize')
        source.emit(LifecycleEvent.CLOSE)

        ready.assert_called_once_with('resize')
        close.assert_not_called()
