"""Request and response bodies of the HTTP API."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class MessageCreate(BaseModel):
    """Defines the structure for chat message requests"""

    model_config = ConfigDict(str_strip_whitespace=True)

    userMessage: str = Field(..., min_length=1, max_length=2000)
    domain: str = Field(..., min_length=1)
    userId: str = Field(..., min_length=1)
    forceModel: Optional[str] = None
    stream: bool = False


class Envelope(BaseModel):
    """Every JSON response is wrapped in {success, message, data}."""

    success: bool = True
    message: str = ""
    data: Optional[Any] = None
