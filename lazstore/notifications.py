"""Push notification fan-out.

Intents are resolved to device tokens (every active user with the target role,
or a single user) and posted to the push gateway. Delivery is best-effort: a
failure is logged and recorded, never raised to the caller.
"""

from __future__ import annotations

import logging
from typing import Optional

import requests
from sqlalchemy.orm import Session

from . import crud
from .config import PUSH_GATEWAY_KEY, PUSH_GATEWAY_TIMEOUT, PUSH_GATEWAY_URL
from .lifecycle import NotificationIntent

logger = logging.getLogger(__name__)

SENT = "sent"
FAILED = "failed"
SKIPPED = "skipped"


class NotificationDispatcher:
    def __init__(self, gateway_url: str = PUSH_GATEWAY_URL, api_key: str = PUSH_GATEWAY_KEY,
                 timeout: float = PUSH_GATEWAY_TIMEOUT, http: Optional[requests.Session] = None):
        self.gateway_url = gateway_url
        self.api_key = api_key
        self.timeout = timeout
        self.http = http or requests.Session()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"key={self.api_key}"
        return headers

    def resolve_tokens(self, db: Session, intent: NotificationIntent) -> list:
        if intent.target_user_id is not None:
            return crud.get_device_tokens(db, user_id=intent.target_user_id)
        if intent.target_role is not None:
            return crud.get_device_tokens(db, role=intent.target_role)
        return []

    def send(self, tokens: list, intent: NotificationIntent) -> bool:
        payload = {
            "tokens": tokens,
            "notification": {"title": intent.title, "body": intent.body},
            "data": dict(intent.metadata),
        }
        try:
            response = self.http.post(
                self.gateway_url,
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.warning("Push gateway unavailable for %s: %s", intent.target, e)
            return False
        if not response.ok:
            logger.warning("Push gateway rejected %s: %s %s",
                           intent.target, response.status_code, response.text[:200])
            return False
        return True

    def dispatch(self, db: Session, intent: NotificationIntent) -> bool:
        tokens = self.resolve_tokens(db, intent)
        if not tokens:
            logger.info("No device tokens for %s, skipping '%s'", intent.target, intent.title)
            status = SKIPPED
            delivered = False
        else:
            delivered = self.send(tokens, intent)
            status = SENT if delivered else FAILED

        crud.add_notification_log(
            db,
            target=intent.target,
            title=intent.title,
            body=intent.body,
            status=status,
            token_count=len(tokens),
        )
        return delivered


_dispatcher: Optional[NotificationDispatcher] = None


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher
