import asyncio
import re
import time
from typing import Any, Dict, List, Optional

import httpx
import jwt

from app.config.settings import settings
from app.services.push.base import PushErrorKind, PushMessage, PushProvider, PushTicket
from app.utils.errors import PushProviderError, PushTransportError
from app.utils.logging import get_logger

logger = get_logger()

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
FCM_ERROR_TYPE = "type.googleapis.com/google.firebase.fcm.v1.FcmError"

# Raw registration tokens: URL-safe characters, no Expo brackets
_FCM_TOKEN = re.compile(r"^[A-Za-z0-9_\-:]{64,4096}$")


class FcmPushProvider(PushProvider):
    """
    Firebase Cloud Messaging HTTP v1.

    FCM v1 takes one message per request, so a batch is sent as concurrent
    requests sharing a cached OAuth2 access token. The token is obtained
    with a service-account JWT assertion signed RS256.
    """

    name = "fcm"
    max_batch_size = 500
    error_map = {
        "UNREGISTERED": PushErrorKind.REGISTRATION_INVALID,
        "INVALID_ARGUMENT": PushErrorKind.REGISTRATION_INVALID,
        "SENDER_ID_MISMATCH": PushErrorKind.CREDENTIALS_INVALID,
        "THIRD_PARTY_AUTH_ERROR": PushErrorKind.CREDENTIALS_INVALID,
        "QUOTA_EXCEEDED": PushErrorKind.RATE_LIMITED,
    }

    def __init__(
        self,
        project_id: str = settings.FCM_PROJECT_ID,
        client_email: str = settings.FCM_CLIENT_EMAIL,
        private_key: str = settings.FCM_PRIVATE_KEY,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = settings.PUSH_HTTP_TIMEOUT_SECONDS,
    ):
        if not all([project_id, client_email, private_key]):
            raise PushProviderError(
                "FCM_PROJECT_ID, FCM_CLIENT_EMAIL and FCM_PRIVATE_KEY must be configured",
                error_code="FCM_CONFIG_MISSING",
            )
        self.project_id = project_id
        self.client_email = client_email
        self.private_key = private_key
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._access_token: Optional[str] = None
        self._access_token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    @property
    def send_url(self) -> str:
        return f"https://fcm.googleapis.com/v1/projects/{self.project_id}/messages:send"

    def is_valid_token(self, token: str) -> bool:
        return bool(_FCM_TOKEN.match(token))

    def _generate_assertion(self, exp_seconds: int = 3600) -> str:
        current_time = int(time.time())
        payload = {
            "iss": self.client_email,
            "scope": FCM_SCOPE,
            "aud": GOOGLE_TOKEN_URL,
            "iat": current_time,
            "exp": current_time + exp_seconds,
        }
        return jwt.encode(payload, self.private_key, algorithm="RS256")

    async def _get_access_token(self) -> str:
        async with self._token_lock:
            # Refresh a minute early so in-flight sends never carry a stale token
            if self._access_token and time.time() < self._access_token_expires_at - 60:
                return self._access_token

            try:
                response = await self.client.post(
                    GOOGLE_TOKEN_URL,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                    data={
                        "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                        "assertion": self._generate_assertion(),
                    },
                )
            except httpx.HTTPError as e:
                raise PushTransportError(f"FCM token request failed: {e}") from e

            if response.status_code != 200:
                raise PushTransportError(
                    f"Failed to issue FCM access token: {response.status_code} - {response.text}",
                    error_code="FCM_TOKEN_ISSUE_FAILED",
                )

            try:
                token_data = response.json()
                access_token = token_data["access_token"]
                expires_in = int(token_data.get("expires_in", 3600))
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                raise PushTransportError(
                    f"FCM token response is malformed: {e!r}",
                    error_code="FCM_TOKEN_MALFORMED",
                ) from e

            logger.debug(f"Issued FCM access token for project {self.project_id}")
            self._access_token = access_token
            self._access_token_expires_at = time.time() + expires_in
            return self._access_token

    def _build_message(self, token: str, message: PushMessage) -> Dict[str, Any]:
        aps: Dict[str, Any] = {"content-available": 1}
        android_notification: Dict[str, Any] = {}
        if message.sound:
            aps["sound"] = message.sound
            android_notification["sound"] = message.sound

        return {
            "message": {
                "token": token,
                "notification": {"title": message.title, "body": message.body},
                "data": {k: str(v) for k, v in message.data.items()},
                "android": {
                    "priority": "high" if message.priority == "high" else "normal",
                    "ttl": f"{message.ttl_seconds}s",
                    "notification": android_notification,
                },
                "apns": {
                    "headers": {
                        "apns-priority": "10" if message.priority == "high" else "5"
                    },
                    "payload": {"aps": aps},
                },
            }
        }

    async def _send_one(
        self, access_token: str, token: str, message: PushMessage
    ) -> PushTicket:
        try:
            response = await self.client.post(
                self.send_url,
                headers={"Authorization": f"Bearer {access_token}"},
                json=self._build_message(token, message),
            )
        except httpx.HTTPError as e:
            return self.failed_ticket(token, "TRANSPORT_ERROR", str(e))

        if response.status_code == 200:
            return PushTicket(token=token, success=True)

        return self.failed_ticket(
            token, self._extract_error_code(response), response.text[:200]
        )

    @staticmethod
    def _extract_error_code(response: httpx.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return None

        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            return None
        details = error.get("details")
        for detail in details if isinstance(details, list) else []:
            if (
                isinstance(detail, dict)
                and detail.get("@type") == FCM_ERROR_TYPE
                and detail.get("errorCode")
            ):
                return detail["errorCode"]
        status = error.get("status")
        return status if isinstance(status, str) else None

    async def send_batch(
        self, tokens: List[str], message: PushMessage
    ) -> List[PushTicket]:
        if not tokens:
            return []
        if len(tokens) > self.max_batch_size:
            raise ValueError(
                f"FCM batches are limited to {self.max_batch_size} tokens"
            )

        access_token = await self._get_access_token()
        return list(
            await asyncio.gather(
                *(self._send_one(access_token, token, message) for token in tokens)
            )
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
