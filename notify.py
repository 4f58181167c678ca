"""Operator notification channels.

Every channel exposes ``send(message)`` and raises NotificationFailed when
the message was not accepted.  ``send_notifications`` fans a message out to
all configured channels and never raises.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import requests

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30
DEFAULT_TELEGRAM_API_URL = "https://api.telegram.org"


class NotificationFailed(Exception):
    """A notification channel did not accept a message."""


class NtfyNotifier:
    """Publishes messages to an ntfy topic."""

    name = "ntfy"

    def __init__(self, url: str, topic: str, title: str = "Log Message",
                 priority: str = "urgent", tags: str = "info",
                 headers: Optional[Dict[str, str]] = None,
                 session: Optional[requests.Session] = None,
                 timeout: float = REQUEST_TIMEOUT):
        if '://' not in url:
            url = f"https://{url}"
        self.endpoint = f"{url.rstrip('/')}/{topic}"
        self.headers = {'Title': title, 'Priority': priority, 'Tags': tags}
        if headers:
            self.headers.update(headers)
        self.session = session or requests.Session()
        self.timeout = timeout

    def send(self, message: str) -> None:
        try:
            response = self.session.post(
                self.endpoint, data=message.encode('utf-8'),
                headers=self.headers, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise NotificationFailed(f"ntfy request failed: {e}") from e

        if not response.ok:
            raise NotificationFailed(f"ntfy returned {response.status_code}: {response.text}")
        logger.debug(f"ntfy report sent to {self.endpoint}")


class TelegramNotifier:
    """Sends messages through a Telegram bot."""

    name = "telegram"

    def __init__(self, bot_token: str, chat_id: str,
                 api_url: str = DEFAULT_TELEGRAM_API_URL,
                 session: Optional[requests.Session] = None,
                 timeout: float = REQUEST_TIMEOUT):
        self._url = f"{api_url.rstrip('/')}/bot{bot_token}/sendMessage"
        self.chat_id = chat_id
        self.session = session or requests.Session()
        self.timeout = timeout

    def send(self, message: str) -> None:
        # The bot token is part of the URL, so it must stay out of error text.
        try:
            response = self.session.post(
                self._url, json={'chat_id': self.chat_id, 'text': message},
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise NotificationFailed(f"Telegram request failed: {type(e).__name__}") from e

        if not response.ok:
            raise NotificationFailed(f"Telegram returned {response.status_code}: {response.text}")
        logger.debug(f"Telegram report sent to chat {self.chat_id}")


def build_notifiers(notifications: Optional[Dict[str, Any]],
                    session: Optional[requests.Session] = None,
                    timeout: float = REQUEST_TIMEOUT) -> List[Any]:
    """Create the channels described by the ``notifications`` config section."""
    notifiers: List[Any] = []
    if not notifications:
        return notifiers

    ntfy = notifications.get('ntfy')
    if ntfy:
        notifiers.append(NtfyNotifier(
            ntfy['url'], ntfy['topic'],
            title=ntfy.get('title', "Log Message"),
            priority=ntfy.get('priority', "urgent"),
            tags=ntfy.get('tags', "info"),
            headers=ntfy.get('headers'),
            session=session, timeout=timeout,
        ))

    telegram = notifications.get('telegram')
    if telegram:
        notifiers.append(TelegramNotifier(
            telegram['bot_token'], str(telegram['chat_id']),
            api_url=telegram.get('api_url', DEFAULT_TELEGRAM_API_URL),
            session=session, timeout=timeout,
        ))

    return notifiers


def send_notifications(notifiers: Sequence[Any], message: str) -> int:
    """Send *message* to every channel, logging failures.

    Returns the number of channels that accepted the message.
    """
    delivered = 0
    for notifier in notifiers:
        try:
            notifier.send(message)
            delivered += 1
        except NotificationFailed as e:
            logger.error(f"Failed to send {getattr(notifier, 'name', 'notification')} report: {e}")
    return delivered
