from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx

from app.config.settings import settings
from app.providers.ritual_store import RitualStore
from app.services.push.base import PushMessage, PushProvider, PushTicket
from app.services.realtime import RealtimeHub, user_topic
from app.utils.errors import PushProviderError
from app.utils.logging import get_logger

logger = get_logger()


@dataclass(frozen=True)
class OutboundNotification:
    """One notification for one record, as sent over both channels."""

    event: str
    payload: Dict[str, Any]
    push: PushMessage


@dataclass
class PushResult:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    tokens_to_disable: List[str] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        return self.attempted > 0 and self.succeeded == 0

    def record(self, ticket: PushTicket) -> None:
        if ticket.success:
            self.succeeded += 1
            return
        self.failed += 1
        if ticket.error_kind is not None and ticket.error_kind.disables_token:
            self.tokens_to_disable.append(ticket.token)


@dataclass
class DispatchResult:
    # Sockets the realtime event was scheduled on; delivery is unconfirmed
    realtime_subscribers: int = 0
    push: PushResult = field(default_factory=PushResult)
    error: Optional[str] = None

    @property
    def realtime_sent(self) -> bool:
        return self.realtime_subscribers > 0

    @property
    def delivered(self) -> bool:
        """False when nothing went out and another attempt is worth making."""
        return self.error is None and not self.push.all_failed


def chunked(items: Sequence[str], size: int) -> Iterable[List[str]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


class NotificationFanout:
    """
    Delivers a notification to a user over the realtime hub and every push
    provider that accepts one of the user's tokens.

    The realtime side is fire-and-forget. Push tokens are chunked per
    provider; a failed chunk counts all of its tokens as failed and is not
    retried. Tokens reported invalid are collected for the caller, which
    disables them in bulk through ``disable_tokens``.
    """

    def __init__(
        self,
        store: RitualStore,
        hub: Optional[RealtimeHub],
        providers: Sequence[PushProvider],
        chunk_size: int = settings.PUSH_CHUNK_SIZE,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.store = store
        self.hub = hub
        self.providers = list(providers)
        self.chunk_size = chunk_size

    async def resolve_tokens(self, user_ids: Iterable[str]) -> Dict[str, List[str]]:
        """Enabled push tokens per user, de-duplicated, in one store call."""
        devices = await self.store.find_devices_for_users(user_ids, only_enabled=True)
        tokens_by_user: Dict[str, List[str]] = defaultdict(list)
        for device in devices:
            if device.token not in tokens_by_user[device.user_id]:
                tokens_by_user[device.user_id].append(device.token)
        return dict(tokens_by_user)

    def route_tokens(self, tokens: Iterable[str]) -> Dict[PushProvider, List[str]]:
        """Group tokens under the first provider accepting their format; unknown formats are dropped."""
        routed: Dict[PushProvider, List[str]] = defaultdict(list)
        for token in dict.fromkeys(tokens):
            provider = next(
                (p for p in self.providers if p.is_valid_token(token)), None
            )
            if provider is not None:
                routed[provider].append(token)
        return dict(routed)

    def _emit_realtime(self, user_id: str, notification: OutboundNotification) -> int:
        if self.hub is None:
            return 0
        try:
            return self.hub.emit(
                user_topic(user_id), notification.event, notification.payload
            )
        except Exception as e:
            logger.bind(user_id=user_id).warning(f"Realtime emit failed: {e}")
            return 0

    async def _send_push(
        self, record_id: str, tokens: Sequence[str], message: PushMessage
    ) -> PushResult:
        result = PushResult()
        for provider, provider_tokens in self.route_tokens(tokens).items():
            size = min(self.chunk_size, provider.max_batch_size)
            for chunk in chunked(provider_tokens, size):
                result.attempted += len(chunk)
                try:
                    tickets = await provider.send_batch(chunk, message)
                except (PushProviderError, httpx.HTTPError) as e:
                    result.failed += len(chunk)
                    logger.bind(
                        record_id=record_id, provider=provider.name, chunk=len(chunk)
                    ).error(f"Push chunk failed: {e}")
                    continue
                except Exception as e:
                    # Earlier chunks keep their outcomes and tokens to disable
                    result.failed += len(chunk)
                    logger.bind(
                        record_id=record_id, provider=provider.name, chunk=len(chunk)
                    ).exception(f"Push chunk failed unexpectedly: {e}")
                    continue

                for ticket in tickets:
                    result.record(ticket)
        return result

    async def dispatch(
        self,
        user_id: str,
        record_id: str,
        notification: OutboundNotification,
        tokens: Optional[Sequence[str]] = None,
    ) -> DispatchResult:
        """
        Send ``notification`` about ``record_id`` to ``user_id``.

        ``tokens`` are the user's push tokens when the caller already
        resolved them for a whole batch; otherwise they are looked up here.
        Never raises: failures are logged and reported in the result.
        """
        result = DispatchResult(
            realtime_subscribers=self._emit_realtime(user_id, notification)
        )

        try:
            if tokens is None:
                tokens = (await self.resolve_tokens([user_id])).get(user_id, [])
            result.push = await self._send_push(record_id, tokens, notification.push)
        except Exception as e:
            logger.bind(user_id=user_id, record_id=record_id).exception(
                f"Push dispatch failed: {e}"
            )
            result.error = str(e)

        if result.push.attempted:
            logger.bind(
                user_id=user_id,
                record_id=record_id,
                attempted=result.push.attempted,
                succeeded=result.push.succeeded,
                failed=result.push.failed,
            ).info("Push dispatched")
        return result

    async def disable_tokens(self, tokens: Iterable[str]) -> int:
        unique_tokens = list(dict.fromkeys(tokens))
        if not unique_tokens:
            return 0
        return await self.store.disable_devices(unique_tokens)

    async def aclose(self) -> None:
        for provider in self.providers:
            await provider.aclose()
