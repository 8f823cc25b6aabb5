"""Data models shared by the request pipeline."""

import time
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field


class Method(str, Enum):
    """HTTP verbs understood by the pipeline."""

    GET = "GET"
    HEAD = "HEAD"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    OPTIONS = "OPTIONS"
    PATCH = "PATCH"
    # Unrecognized verbs normalize to this marker; the method check rejects it
    NOT_MATCHED = "NOT_MATCHED"


HTTP_METHODS: tuple[Method, ...] = tuple(m for m in Method if m is not Method.NOT_MATCHED)


class LogEvent(BaseModel):
    """A structured diagnostic event emitted while a request is processed."""

    category: Annotated[str, Field(description="Component that produced the event")]
    action: Annotated[str, Field(description="Sub-category of the event")] = "log"
    message: Annotated[str, Field(description="Human readable message")] = ""
    details: Annotated[dict[str, Any], Field(description="Data associated with the event")] = {}
    timestamp: Annotated[float, Field(default_factory=time.time, description="Epoch seconds")]


class Cookie(BaseModel):
    """A cookie set on a response."""

    name: Annotated[str, Field(description="Cookie name")]
    value: Annotated[str, Field(description="Cookie value")]
    options: Annotated[dict[str, Any], Field(description="Options used to serialize the cookie")] = {}
    serialized: Annotated[str, Field(description="Set-Cookie header value")]


class ResponseSnapshot(BaseModel):
    """Copy of the current response state."""

    body: Any = ""
    cookies: list[Cookie] = []
    headers: dict[str, str] = {}
    sent: bool = False
    status_code: Annotated[int, Field(ge=0)] = 0


class ResponseState(BaseModel):
    """The settlement a request resolves to."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    body: Any = ""
    cookies: list[Cookie] = []
    headers: dict[str, str] = {}
    raw_headers: Annotated[str, Field(description="One header per line, then one Set-Cookie line per cookie")] = ""
    status_code: Annotated[int, Field(ge=0, description="HTTP status code")] = 0
    error: Annotated[BaseException | None, Field(description="Error converted into this response")] = None
