from .dedup_cache import DedupCache, InMemoryDedupCache, RedisDedupCache
from .fanout import (
    DispatchResult,
    NotificationFanout,
    OutboundNotification,
    PushResult,
)

__all__ = [
    "DedupCache",
    "InMemoryDedupCache",
    "RedisDedupCache",
    "DispatchResult",
    "NotificationFanout",
    "OutboundNotification",
    "PushResult",
]
