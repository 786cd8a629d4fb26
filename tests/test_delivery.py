"""Tests for the delivery dispatcher: channel resolution, deadlines and outcome normalisation."""

import asyncio
from unittest.mock import patch

from tokenlogin.config import configure
from tokenlogin.service.delivery import DeliveryDispatcher
from tokenlogin.service.errors import (
    DeliveryFailed,
    DeliveryTimeout,
    TransientError,
    UnsupportedFactor,
)


def _dispatcher(**overrides):
    return DeliveryDispatcher(configure(overrides))


class TestDeliver:
    async def test_async_channel_receives_contact_and_token(self, channel):
        dispatcher = _dispatcher(factors={"capture": channel.send})

        result = await dispatcher.deliver("chat-1", "ABC123", "capture")

        assert result.ok
        assert result.status == "sent"
        assert result.info == {"captured": 1}
        assert channel.sent == [{"contact": "chat-1", "token": "ABC123", "factor": "capture"}]

    async def test_sync_channel_runs_in_worker_thread(self):
        calls = []

        def send(contact, token, factor, settings=None):
            calls.append((contact, token, factor, settings))
            return "queued"

        dispatcher = _dispatcher(factors={"sync": send})
        result = await dispatcher.deliver("a@example.com", "XYZ", "sync")

        assert result.ok
        assert result.info == "queued"
        assert calls[0][:3] == ("a@example.com", "XYZ", "sync")

    async def test_channel_receives_its_own_settings(self):
        received = []

        async def send(contact, token, factor, settings=None):
            received.append(settings)

        dispatcher = _dispatcher(
            factors={
                "sms": {"send": send, "settings": {"timeout_ms": 500, "api_key": "K", "region": "us"}}
            },
            settings={"region": "eu", "sender": "TokenLogin"},
        )

        result = await dispatcher.deliver("+15550100", "XYZ", "sms")

        assert result.ok
        assert received[0]["api_key"] == "K"
        assert received[0]["timeout_ms"] == 500
        # channel values win over the global ones
        assert received[0]["region"] == "us"
        assert received[0]["sender"] == "TokenLogin"

    async def test_channel_settings_are_not_shared(self):
        received = {}

        def recorder(name):
            async def send(contact, token, factor, settings=None):
                received[name] = dict(settings)

            return send

        dispatcher = _dispatcher(
            factors={
                "a": {"send": recorder("a"), "settings": {"api_key": "A"}},
                "b": recorder("b"),
            }
        )

        await dispatcher.deliver("x", "T1", "a")
        await dispatcher.deliver("x", "T2", "b")

        assert received == {"a": {"api_key": "A"}, "b": {}}

    async def test_unknown_factor_is_unsupported(self):
        result = await _dispatcher().deliver("chat-1", "ABC123", "pigeon")

        assert not result.ok
        assert result.status == "unsupported"
        assert isinstance(result.error, UnsupportedFactor)

    async def test_channel_exception_becomes_delivery_failed(self, make_channel):
        cause = ConnectionError("smtp down")
        broken = make_channel(error=cause)
        dispatcher = _dispatcher(factors={"email": broken.send})

        result = await dispatcher.deliver("a@example.com", "ABC123", "email")

        assert result.status == "failed"
        assert isinstance(result.error, DeliveryFailed)
        assert isinstance(result.error, TransientError)
        assert result.error.cause is cause
        assert result.error.__cause__ is cause

    async def test_slow_channel_times_out_with_global_deadline(self, make_channel):
        slow = make_channel(delay=1.0)
        dispatcher = _dispatcher(factors={"slow": slow.send}, timeout_ms=50)

        result = await dispatcher.deliver("chat-1", "ABC123", "slow")

        assert result.status == "timeout"
        assert isinstance(result.error, DeliveryTimeout)
        assert result.error.timeout_ms == 50
        # the late send is discarded
        await asyncio.sleep(0)
        assert slow.sent == []

    async def test_channel_timeout_overrides_global(self, make_channel):
        slow = make_channel(delay=0.2)
        dispatcher = _dispatcher(
            factors={"slow": {"send": slow.send, "settings": {"timeout_ms": 2000}}},
            timeout_ms=50,
        )

        result = await dispatcher.deliver("chat-1", "ABC123", "slow")

        assert result.ok
        assert slow.last_token == "ABC123"


class TestDevFallback:
    async def test_token_not_logged_by_default(self):
        dispatcher = _dispatcher()
        with patch("tokenlogin.service.delivery.logger") as mock_logger:
            await dispatcher.deliver("chat-1", "SECRET", "pigeon")

        events = [call.args[0] for call in mock_logger.warning.call_args_list]
        assert "insecure_dev_token_fallback" not in events
        for call in mock_logger.warning.call_args_list:
            assert "SECRET" not in call.kwargs.values()

    async def test_token_logged_when_flag_enabled(self):
        dispatcher = _dispatcher(dev_token_fallback=True)
        with patch("tokenlogin.service.delivery.logger") as mock_logger:
            result = await dispatcher.deliver("chat-1", "SECRET", "pigeon")

        assert result.status == "unsupported"
        fallback = [
            call for call in mock_logger.warning.call_args_list
            if call.args[0] == "insecure_dev_token_fallback"
        ]
        assert len(fallback) == 1
        assert fallback[0].kwargs["verification_code"] == "SECRET"
        assert fallback[0].kwargs["reason"] == "unsupported"

    async def test_fallback_also_covers_failed_delivery(self, make_channel):
        broken = make_channel(error=RuntimeError("boom"))
        dispatcher = _dispatcher(dev_token_fallback=True, factors={"email": broken.send})
        with patch("tokenlogin.service.delivery.logger") as mock_logger:
            await dispatcher.deliver("a@example.com", "SECRET", "email")

        reasons = [
            call.kwargs.get("reason")
            for call in mock_logger.warning.call_args_list
            if call.args[0] == "insecure_dev_token_fallback"
        ]
        assert reasons == ["failed"]
