from __future__ import annotations

import logging

import requests

import config

logger = logging.getLogger("forexdesk.notifier")

TELEGRAM_API_BASE = "https://api.telegram.org"


class TelegramNotifier:
    """Fire-and-forget messages through the Telegram Bot API.

    Delivery is best effort: failures are logged and never raised, so a
    notification problem can't undo the state change that triggered it.
    """

    def __init__(
        self,
        token: str | None = None,
        admin_chat_id: str | None = None,
        *,
        api_base: str | None = None,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self.token = token
        self.admin_chat_id = admin_chat_id
        self.api_base = (api_base or TELEGRAM_API_BASE).rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_env(cls) -> TelegramNotifier:
        return cls(
            token=config.bot_token(),
            admin_chat_id=config.admin_chat_id(),
            api_base=config.env("TELEGRAM_API_BASE"),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.token)

    def notify(self, chat_id: str | None, text: str) -> bool:
        if not chat_id:
            logger.info("Notification skipped (no recipient): %s", text)
            return False
        if not self.enabled:
            logger.info("Notification for %s (bot disabled): %s", chat_id, text)
            return False
        try:
            resp = self.session.post(
                f"{self.api_base}/bot{self.token}/sendMessage",
                json={"chat_id": chat_id, "text": text},
                timeout=self.timeout,
            )
        except requests.RequestException:
            logger.exception("Failed to reach Telegram for %s.", chat_id)
            return False
        if resp.status_code >= 400:
            logger.error("Telegram sendMessage failed for %s: %s", chat_id, resp.text)
            return False
        return True

    def notify_admin(self, text: str) -> bool:
        return self.notify(self.admin_chat_id, text)
