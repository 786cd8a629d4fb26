"""Tests for the built-in Telegram, email and console delivery channels."""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import httpx
import pytest

from tokenlogin.config import configure
from tokenlogin.service.delivery import DeliveryDispatcher
from tokenlogin.service.email import EmailService
from tokenlogin.service.factors import (
    console_send,
    default_factors,
    make_email_send,
    make_telegram_send,
)
from tokenlogin.service.telegram import TelegramService


def _telegram(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TelegramService(bot_token="123:abc", client=client)


class TestTelegram:
    async def test_posts_message_to_chat(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"ok": True, "result": {"message_id": 42}})

        service = _telegram(handler)
        message_id = await service.send_login_token("chat-7", "ABC123")
        await service.close()

        assert message_id == 42
        assert str(seen[0].url).endswith("/bot123:abc/sendMessage")
        payload = json.loads(seen[0].content)
        assert payload["chat_id"] == "chat-7"
        assert "ABC123" in payload["text"]

    async def test_rejection_raises(self):
        service = _telegram(lambda request: httpx.Response(200, json={"ok": False, "description": "chat not found"}))

        with pytest.raises(RuntimeError, match="chat not found"):
            await service.send_login_token("chat-7", "ABC123")
        await service.close()

    async def test_http_error_propagates(self):
        service = _telegram(lambda request: httpx.Response(502))

        with pytest.raises(httpx.HTTPStatusError):
            await service.send_login_token("chat-7", "ABC123")
        await service.close()

    async def test_failure_reaches_dispatcher_as_failed(self):
        service = _telegram(lambda request: httpx.Response(500))
        dispatcher = DeliveryDispatcher(configure({"factors": {"telegram": make_telegram_send(service)}}))

        result = await dispatcher.deliver("chat-7", "ABC123", "telegram")
        await service.close()

        assert result.status == "failed"
        assert isinstance(result.error.cause, httpx.HTTPStatusError)

    async def test_unconfigured_bot(self):
        with pytest.raises(RuntimeError):
            await TelegramService().send_login_token("chat-7", "ABC123")


class TestEmail:
    def _service(self):
        return EmailService(
            smtp_host="smtp.example.com",
            smtp_user="bot@example.com",
            smtp_password="pw",
            from_name="Token Login",
        )

    def test_sends_token_over_starttls(self):
        server = MagicMock()
        with patch("tokenlogin.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = server
            self._service().send_login_token("user@example.com", "XYZ789")

        server.starttls.assert_called_once()
        server.login.assert_called_once_with("bot@example.com", "pw")
        from_addr, to_addr, body = server.sendmail.call_args.args
        assert (from_addr, to_addr) == ("bot@example.com", "user@example.com")
        assert "XYZ789" in body

    def test_smtp_failure_is_raised(self):
        with patch("tokenlogin.service.email.smtplib.SMTP", side_effect=OSError("refused")):
            with pytest.raises(OSError):
                self._service().send_login_token("user@example.com", "XYZ789")

    async def test_email_channel_runs_off_loop(self):
        service = MagicMock()
        send = make_email_send(service)

        info = await send("user@example.com", "XYZ789", "email")

        service.send_login_token.assert_called_once_with("user@example.com", "XYZ789")
        assert info == {"channel": "email"}

    def test_unconfigured_email(self):
        assert EmailService().is_configured is False


class TestDefaultFactors:
    def test_only_configured_channels_are_registered(self):
        settings = SimpleNamespace(
            enable_console_factor=True, email_timeout_ms=3000, telegram_timeout_ms=4000
        )
        factors = default_factors(
            settings,
            email_service=EmailService(),
            telegram_service=TelegramService(bot_token="123:abc"),
        )

        assert sorted(factors) == ["console", "telegram"]
        assert factors["telegram"].timeout_ms == 4000

    def test_console_channel_logs_code(self):
        with patch("tokenlogin.service.factors.logger") as mock_logger:
            info = console_send("chat-1", "ABC123", "console")

        assert info == {"channel": "console"}
        assert mock_logger.warning.call_args.kwargs["code"] == "ABC123"
