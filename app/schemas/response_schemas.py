from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ResponseStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class ApiEnvelope(BaseModel):
    """Body shape shared by every JSON response; keys are camelCased on output."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    status: ResponseStatus
    message: str
    request_id: str
    path: str
    data: Optional[Any] = None
    meta: Optional[Dict[str, Any]] = None
    errors: Optional[List[Dict[str, Any]]] = Field(
        default=None, description="Per-field problems for validation failures"
    )
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
