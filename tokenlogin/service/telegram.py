from __future__ import annotations

from typing import Optional

import httpx

from tokenlogin.logging import get_logger, redact_contact

logger = get_logger(__name__)


class TelegramService:
    """Sends login tokens as Telegram Bot API messages.

    The contact is the chat id the user has opened with the bot.
    """

    def __init__(
        self,
        *,
        bot_token: Optional[str] = None,
        api_base: str = "https://api.telegram.org",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.bot_token = bot_token
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.bot_token)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=5.0),
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send_login_token(self, chat_id: str, token: str) -> Optional[int]:
        """Post the token to ``chat_id``; returns the Telegram message id."""
        if not self.is_configured:
            raise RuntimeError("Telegram bot token is not configured")

        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.api_base}/bot{self.bot_token}/sendMessage",
                json={
                    "chat_id": chat_id,
                    "text": f"Your verification code is: {token}",
                    "disable_notification": False,
                },
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "telegram_api_error",
                chat=redact_contact(chat_id),
                status_code=e.response.status_code,
            )
            raise
        except httpx.HTTPError as e:
            logger.error(
                "telegram_send_failed",
                chat=redact_contact(chat_id),
                error_type=type(e).__name__,
                error=str(e),
            )
            raise

        if not data.get("ok"):
            description = data.get("description", "unknown error")
            logger.error("telegram_rejected", chat=redact_contact(chat_id), description=description)
            raise RuntimeError(f"Telegram rejected message: {description}")

        message_id = (data.get("result") or {}).get("message_id")
        logger.info("telegram_sent", chat=redact_contact(chat_id), message_id=message_id)
        return message_id
