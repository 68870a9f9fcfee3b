import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional


class PushErrorKind(str, enum.Enum):
    """Provider-independent classification of a per-token push failure."""

    REGISTRATION_INVALID = "registration-invalid"
    CREDENTIALS_INVALID = "credentials-invalid"
    RATE_LIMITED = "rate-limited"
    OTHER = "other"

    @property
    def disables_token(self) -> bool:
        return self in (
            PushErrorKind.REGISTRATION_INVALID,
            PushErrorKind.CREDENTIALS_INVALID,
        )


@dataclass(frozen=True)
class PushMessage:
    title: str
    body: str
    data: Dict[str, str] = field(default_factory=dict)
    sound: Optional[str] = "default"
    priority: str = "high"
    ttl_seconds: int = 3600


@dataclass(frozen=True)
class PushTicket:
    """Outcome of one token inside a provider batch."""

    token: str
    success: bool
    error_code: Optional[str] = None
    error_kind: Optional[PushErrorKind] = None
    detail: Optional[str] = None


class PushProvider(ABC):
    """
    A mobile push provider able to send one message to a batch of tokens.

    ``send_batch`` returns one ticket per token, in order. It raises
    ``PushTransportError`` when the batch as a whole could not be delivered.
    """

    name: str = "push"
    max_batch_size: int = 100
    error_map: Dict[str, PushErrorKind] = {}

    @abstractmethod
    def is_valid_token(self, token: str) -> bool:
        pass

    @abstractmethod
    async def send_batch(
        self, tokens: List[str], message: PushMessage
    ) -> List[PushTicket]:
        pass

    def classify(self, error_code: Optional[str]) -> PushErrorKind:
        if not error_code:
            return PushErrorKind.OTHER
        return self.error_map.get(error_code, PushErrorKind.OTHER)

    def failed_ticket(
        self, token: str, error_code: Optional[str], detail: Optional[str] = None
    ) -> PushTicket:
        return PushTicket(
            token=token,
            success=False,
            error_code=error_code,
            error_kind=self.classify(error_code),
            detail=detail,
        )

    async def aclose(self) -> None:
        return None
