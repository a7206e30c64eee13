from __future__ import annotations

from typing import Any, List, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class ConsoleFrame(BaseModel):
    """A call sent by a console client over the WebSocket."""

    id: Union[int, str]
    type: str = Field(..., min_length=1)
    args: List[Any] = Field(default_factory=list)


class MessageRequest(BaseModel):
    """Inbound chat message delivered by the message-routing layer."""

    platform: str = Field(..., min_length=1)
    pid: str = Field(..., min_length=1)
    content: str
    name: Optional[str] = None


class MessageResponse(BaseModel):
    matched: bool
