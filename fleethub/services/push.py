"""
Expo push delivery.
Looks up the recipients' registered push tokens and posts one message per token.
"""
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import httpx
import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import PushToken
from .errors import DependencyError


logger = structlog.get_logger(__name__)

# Expo accepts at most 100 messages per request
EXPO_BATCH_SIZE = 100


@dataclass
class PushResult:
    success: bool
    tokens_sent: int


class PushDispatcher:
    """Client for the Expo push notification service"""

    def __init__(
        self,
        db: Session,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.db = db
        self.url = url or settings.expo_push_url
        self.timeout = timeout if timeout is not None else settings.push_timeout_seconds
        self.transport = transport

    def _tokens_for(self, user_ids: List[uuid.UUID]) -> List[str]:
        if not user_ids:
            return []
        rows = self.db.query(PushToken.token).filter(PushToken.user_id.in_(user_ids)).all()
        return [row[0] for row in rows]

    def _post(self, client: httpx.Client, messages: List[Dict[str, Any]]) -> bool:
        response = client.post(
            self.url,
            json=messages,
            headers={"Accept": "application/json", "Accept-Encoding": "gzip, deflate"},
        )
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as e:
            # A proxy can answer 200 with an HTML error page
            raise DependencyError(f"Push delivery failed: unreadable Expo response ({response.status_code})") from e
        tickets = payload.get("data", []) if isinstance(payload, dict) else payload
        errors = [t for t in tickets or [] if isinstance(t, dict) and t.get("status") == "error"]
        for ticket in errors:
            logger.warning("push_ticket_error", message=ticket.get("message"), details=ticket.get("details"))
        return not errors

    def send(
        self,
        user_ids: Iterable[uuid.UUID],
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> PushResult:
        """
        Send one push message to every token registered for the given users.

        Returns:
            PushResult; success is False when there was nothing to send or
            Expo rejected any ticket

        Raises:
            DependencyError: the Expo API could not be reached
        """
        if not settings.enable_push:
            return PushResult(success=False, tokens_sent=0)

        recipients = list(user_ids)
        tokens = self._tokens_for(recipients)
        if not tokens:
            logger.info("push_no_tokens", recipients=len(recipients))
            return PushResult(success=False, tokens_sent=0)

        messages = [
            {
                "to": token,
                "sound": "default",
                "title": title,
                "body": body,
                "data": data or {},
                "priority": "high",
            }
            for token in tokens
        ]

        ok = True
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                for start in range(0, len(messages), EXPO_BATCH_SIZE):
                    ok = self._post(client, messages[start:start + EXPO_BATCH_SIZE]) and ok
        except httpx.HTTPError as e:
            raise DependencyError(f"Push delivery failed: {e}") from e

        return PushResult(success=ok, tokens_sent=len(tokens))
