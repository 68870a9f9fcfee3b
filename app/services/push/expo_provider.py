import re
from typing import Any, Dict, List, Optional

import httpx

from app.config.settings import settings
from app.services.push.base import PushErrorKind, PushMessage, PushProvider, PushTicket
from app.utils.errors import PushTransportError
from app.utils.logging import get_logger

logger = get_logger()

_EXPO_BRACKET_TOKEN = re.compile(r"^(ExponentPushToken|ExpoPushToken)\[[^\]]+\]$")
_EXPO_UUID_TOKEN = re.compile(
    r"^[a-z\d]{8}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{12}$", re.IGNORECASE
)


class ExpoPushProvider(PushProvider):
    """Expo push service, spoken to over its JSON HTTP API."""

    name = "expo"
    # Expo rejects requests carrying more than 100 messages
    max_batch_size = 100
    error_map = {
        "DeviceNotRegistered": PushErrorKind.REGISTRATION_INVALID,
        "InvalidCredentials": PushErrorKind.CREDENTIALS_INVALID,
        "MessageRateExceeded": PushErrorKind.RATE_LIMITED,
        "TooManyRequests": PushErrorKind.RATE_LIMITED,
    }

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        url: str = settings.EXPO_PUSH_URL,
        access_token: str = settings.EXPO_ACCESS_TOKEN,
        timeout: float = settings.PUSH_HTTP_TIMEOUT_SECONDS,
    ):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.url = url
        self.access_token = access_token

    def is_valid_token(self, token: str) -> bool:
        return bool(_EXPO_BRACKET_TOKEN.match(token) or _EXPO_UUID_TOKEN.match(token))

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def _build_payload(
        self, tokens: List[str], message: PushMessage
    ) -> List[Dict[str, Any]]:
        return [
            {
                "to": token,
                "title": message.title,
                "body": message.body,
                "data": message.data,
                "sound": message.sound,
                "priority": message.priority,
                "ttl": message.ttl_seconds,
            }
            for token in tokens
        ]

    async def send_batch(
        self, tokens: List[str], message: PushMessage
    ) -> List[PushTicket]:
        if not tokens:
            return []
        if len(tokens) > self.max_batch_size:
            raise ValueError(
                f"Expo accepts at most {self.max_batch_size} messages per request"
            )

        try:
            response = await self.client.post(
                self.url,
                headers=self._headers(),
                json=self._build_payload(tokens, message),
            )
        except httpx.HTTPError as e:
            raise PushTransportError(f"Expo push request failed: {e}") from e

        if response.status_code == 429:
            logger.warning(f"Expo push rate limited a batch of {len(tokens)} token(s)")
            return [
                self.failed_ticket(token, "TooManyRequests", "HTTP 429")
                for token in tokens
            ]

        if response.status_code != 200:
            raise PushTransportError(
                f"Expo push rejected batch: {response.status_code} - {response.text}",
                error_code="EXPO_BATCH_REJECTED",
            )

        try:
            body = response.json()
        except ValueError as e:
            raise PushTransportError(f"Expo push returned invalid JSON: {e}") from e

        tickets = body.get("data") if isinstance(body, dict) else None
        if (
            not isinstance(tickets, list)
            or len(tickets) != len(tokens)
            or not all(isinstance(raw, dict) for raw in tickets)
        ):
            raise PushTransportError(
                "Expo push returned a ticket list that does not match the batch",
                error_code="EXPO_TICKET_MISMATCH",
            )

        return [self._to_ticket(token, raw) for token, raw in zip(tokens, tickets)]

    def _to_ticket(self, token: str, raw: Dict[str, Any]) -> PushTicket:
        if raw.get("status") == "ok":
            return PushTicket(token=token, success=True)

        details = raw.get("details")
        error_code = details.get("error") if isinstance(details, dict) else None
        return self.failed_ticket(token, error_code, raw.get("message"))

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
