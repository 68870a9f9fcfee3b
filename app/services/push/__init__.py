from typing import List, Optional

import httpx

from app.config.settings import settings
from .base import PushErrorKind, PushMessage, PushProvider, PushTicket
from .expo_provider import ExpoPushProvider
from .fcm_provider import FcmPushProvider


def build_push_providers(client: Optional[httpx.AsyncClient] = None) -> List[PushProvider]:
    """Providers in routing order; FCM is added only when credentials exist."""
    providers: List[PushProvider] = [ExpoPushProvider(client=client)]
    if settings.fcm_enabled:
        providers.append(FcmPushProvider(client=client))
    return providers


__all__ = [
    "PushErrorKind",
    "PushMessage",
    "PushProvider",
    "PushTicket",
    "ExpoPushProvider",
    "FcmPushProvider",
    "build_push_providers",
]
