import json
import pytest
import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from app.services.push.base import PushErrorKind, PushMessage
from app.services.push.expo_provider import ExpoPushProvider
from app.services.push.fcm_provider import FcmPushProvider
from app.utils.errors import PushProviderError, PushTransportError
from tests.fakes import expo_token

MESSAGE = PushMessage(title="Lembrete", body="hora de revisar", data={"ritualId": "r-1"})
FCM_TOKEN = "f" * 20 + ":APA91b" + "x" * 100


def expo_provider(handler) -> ExpoPushProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ExpoPushProvider(client=client, url="https://push.test/send")


@pytest.fixture(scope="module")
def private_key_pem() -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()


class TestExpoPushProvider:
    """Expo HTTP response parsing."""

    def test_token_formats(self):
        provider = ExpoPushProvider(client=httpx.AsyncClient())
        assert provider.is_valid_token("ExponentPushToken[abc123]")
        assert provider.is_valid_token("ExpoPushToken[abc123]")
        assert provider.is_valid_token("2f5cbd6e-8f62-4c8a-9d4f-4a2f3c6b9e10")
        assert not provider.is_valid_token("ExponentPushToken[]")
        assert not provider.is_valid_token(FCM_TOKEN)

    @pytest.mark.asyncio
    async def test_tickets_are_mapped_in_order(self):
        sent = {}

        def handler(request: httpx.Request) -> httpx.Response:
            sent["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "data": [
                        {"status": "ok", "id": "t-1"},
                        {
                            "status": "error",
                            "message": "not registered",
                            "details": {"error": "DeviceNotRegistered"},
                        },
                        {
                            "status": "error",
                            "message": "slow down",
                            "details": {"error": "MessageRateExceeded"},
                        },
                    ]
                },
            )

        provider = expo_provider(handler)
        tokens = [expo_token(1), expo_token(2), expo_token(3)]

        tickets = await provider.send_batch(tokens, MESSAGE)

        assert [t.success for t in tickets] == [True, False, False]
        assert tickets[1].error_kind == PushErrorKind.REGISTRATION_INVALID
        assert tickets[2].error_kind == PushErrorKind.RATE_LIMITED
        assert [m["to"] for m in sent["body"]] == tokens
        assert sent["body"][0]["data"] == {"ritualId": "r-1"}

    @pytest.mark.asyncio
    async def test_http_429_rate_limits_every_token(self):
        provider = expo_provider(lambda request: httpx.Response(429))

        tickets = await provider.send_batch([expo_token(1), expo_token(2)], MESSAGE)

        assert all(t.error_kind == PushErrorKind.RATE_LIMITED for t in tickets)
        assert not any(t.error_kind.disables_token for t in tickets)

    @pytest.mark.asyncio
    async def test_server_error_raises_transport_error(self):
        provider = expo_provider(lambda request: httpx.Response(503, text="down"))

        with pytest.raises(PushTransportError):
            await provider.send_batch([expo_token(1)], MESSAGE)

    @pytest.mark.asyncio
    async def test_connection_error_raises_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(PushTransportError):
            await expo_provider(handler).send_batch([expo_token(1)], MESSAGE)

    @pytest.mark.asyncio
    async def test_ticket_count_mismatch_raises(self):
        provider = expo_provider(
            lambda request: httpx.Response(200, json={"data": [{"status": "ok"}]})
        )

        with pytest.raises(PushTransportError):
            await provider.send_batch([expo_token(1), expo_token(2)], MESSAGE)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [[{"status": "ok"}], {"data": "ok"}, {"data": ["ok"]}],
    )
    async def test_malformed_body_raises_transport_error(self, body):
        provider = expo_provider(lambda request: httpx.Response(200, json=body))

        with pytest.raises(PushTransportError):
            await provider.send_batch([expo_token(1)], MESSAGE)

    @pytest.mark.asyncio
    async def test_non_dict_error_details_fall_back_to_other(self):
        provider = expo_provider(
            lambda request: httpx.Response(
                200, json={"data": [{"status": "error", "details": "gone"}]}
            )
        )

        tickets = await provider.send_batch([expo_token(1)], MESSAGE)

        assert tickets[0].error_kind == PushErrorKind.OTHER

    @pytest.mark.asyncio
    async def test_oversized_batch_is_rejected(self):
        provider = expo_provider(lambda request: httpx.Response(200))

        with pytest.raises(ValueError):
            await provider.send_batch([expo_token(n) for n in range(101)], MESSAGE)


class TestFcmPushProvider:
    """FCM HTTP v1 auth and per-token error mapping."""

    def make_provider(self, handler, private_key_pem) -> FcmPushProvider:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return FcmPushProvider(
            project_id="whisper-test",
            client_email="push@whisper-test.iam.gserviceaccount.com",
            private_key=private_key_pem,
            client=client,
        )

    def test_requires_credentials(self):
        with pytest.raises(PushProviderError):
            FcmPushProvider(project_id="", client_email="", private_key="")

    def test_token_formats(self, private_key_pem):
        provider = self.make_provider(lambda r: httpx.Response(200), private_key_pem)
        assert provider.is_valid_token(FCM_TOKEN)
        assert not provider.is_valid_token(expo_token(1))

    @pytest.mark.asyncio
    async def test_sends_per_token_and_caches_access_token(self, private_key_pem):
        calls = {"token": 0, "send": []}
        bad_token = "b" * 20 + ":APA91b" + "y" * 100

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "oauth2.googleapis.com":
                calls["token"] += 1
                return httpx.Response(
                    200, json={"access_token": "ya29.test", "expires_in": 3600}
                )

            assert request.headers["Authorization"] == "Bearer ya29.test"
            body = json.loads(request.content)
            calls["send"].append(body["message"]["token"])
            if body["message"]["token"] == bad_token:
                return httpx.Response(
                    404,
                    json={
                        "error": {
                            "code": 404,
                            "status": "NOT_FOUND",
                            "details": [
                                {
                                    "@type": "type.googleapis.com/google.firebase.fcm.v1.FcmError",
                                    "errorCode": "UNREGISTERED",
                                }
                            ],
                        }
                    },
                )
            return httpx.Response(200, json={"name": "projects/whisper-test/messages/1"})

        provider = self.make_provider(handler, private_key_pem)

        first = await provider.send_batch([FCM_TOKEN, bad_token], MESSAGE)
        second = await provider.send_batch([FCM_TOKEN], MESSAGE)

        assert calls["token"] == 1
        assert sorted(calls["send"]) == sorted([FCM_TOKEN, bad_token, FCM_TOKEN])
        assert first[0].success is True
        assert first[1].error_code == "UNREGISTERED"
        assert first[1].error_kind == PushErrorKind.REGISTRATION_INVALID
        assert second[0].success is True

    @pytest.mark.asyncio
    async def test_quota_exceeded_is_rate_limited(self, private_key_pem):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "oauth2.googleapis.com":
                return httpx.Response(200, json={"access_token": "ya29.test"})
            return httpx.Response(
                429,
                json={
                    "error": {
                        "status": "RESOURCE_EXHAUSTED",
                        "details": [
                            {
                                "@type": "type.googleapis.com/google.firebase.fcm.v1.FcmError",
                                "errorCode": "QUOTA_EXCEEDED",
                            }
                        ],
                    }
                },
            )

        provider = self.make_provider(handler, private_key_pem)

        tickets = await provider.send_batch([FCM_TOKEN], MESSAGE)

        assert tickets[0].error_kind == PushErrorKind.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_token_endpoint_failure_fails_the_batch(self, private_key_pem):
        provider = self.make_provider(
            lambda request: httpx.Response(401, json={"error": "invalid_grant"}),
            private_key_pem,
        )

        with pytest.raises(PushTransportError):
            await provider.send_batch([FCM_TOKEN], MESSAGE)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "token_response",
        [
            httpx.Response(200, json={"expires_in": 3600}),
            httpx.Response(200, json=["ya29.test"]),
            httpx.Response(200, text="not json"),
        ],
    )
    async def test_malformed_token_response_fails_the_batch(
        self, private_key_pem, token_response
    ):
        provider = self.make_provider(lambda request: token_response, private_key_pem)

        with pytest.raises(PushTransportError) as excinfo:
            await provider.send_batch([FCM_TOKEN], MESSAGE)

        assert excinfo.value.error_code == "FCM_TOKEN_MALFORMED"

    @pytest.mark.asyncio
    async def test_unexpected_error_body_is_other(self, private_key_pem):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "oauth2.googleapis.com":
                return httpx.Response(200, json={"access_token": "ya29.test"})
            return httpx.Response(500, json=["boom"])

        provider = self.make_provider(handler, private_key_pem)

        tickets = await provider.send_batch([FCM_TOKEN], MESSAGE)

        assert tickets[0].success is False
        assert tickets[0].error_code is None
        assert tickets[0].error_kind == PushErrorKind.OTHER
