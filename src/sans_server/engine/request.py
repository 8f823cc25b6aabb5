"""Request entity and its normalization."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Mapping
from contextlib import ExitStack
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ValidationError, ValidationInfo, field_validator, model_validator

from sans_server.engine.events import Diagnostics, EventChannel
from sans_server.engine.middleware import HookRegistry, HookSet
from sans_server.engine.response import Response
from sans_server.shared.logging import get_logger
from sans_server.shared.models import LogEvent, Method, ResponseState

logger = get_logger(__name__)

QueryValue = str | bool | list[str | bool]


def parse_query(query_string: str) -> dict[str, QueryValue]:
    """
    Parse a raw query string.

    Names without ``=`` map to True. Repeated names collect their values in
    order. Values are not percent-decoded.
    """
    query: dict[str, QueryValue] = {}
    for pair in query_string.split("&"):
        if not pair:
            continue
        name, sep, value = pair.partition("=")
        item: str | bool = value if sep else True
        if name not in query:
            query[name] = item
        elif isinstance(query[name], list):
            query[name].append(item)
        else:
            query[name] = [query[name], item]
    return query


def build_query_string(query: Mapping[str, QueryValue]) -> str:
    """Serialize a query mapping, including the leading ``?`` when not empty."""
    pairs = []
    for name, value in query.items():
        for item in value if isinstance(value, list) else [value]:
            pairs.append(name if item is True else f"{name}={item}")
    return "?" + "&".join(pairs) if pairs else ""


def normalize_path(path: str) -> str:
    path = path.split("#", 1)[0]
    return "/" + path.strip("/")


def _warn(info: ValidationInfo, message: str) -> None:
    if info.context is not None:
        info.context.setdefault("warnings", []).append(message)


class RequestInput(BaseModel):
    """
    Loosely typed request description, normalized field by field.

    Validators never reject a value: problems are recorded as warnings in
    the validation context and a default is used instead.
    """

    method: Method = Method.GET
    raw_method: str = "GET"
    path: str = "/"
    query: dict[str, QueryValue] = {}
    headers: dict[str, str] = {}
    body: Any = None

    @model_validator(mode="before")
    @classmethod
    def split_path(cls, data: Any, info: ValidationInfo) -> Any:
        if data is None:
            return {}
        if isinstance(data, str):
            data = {"path": data}
        if not isinstance(data, Mapping):
            _warn(info, f"Request must be a path string or a mapping. Received: {data!r}")
            return {}

        data = dict(data)
        path = data.get("path", "")
        if not isinstance(path, str):
            _warn(info, f"Request path must be a string. Received: {path!r}")
            path = ""
        path, _, query_string = path.partition("?")
        data["path"] = path

        if query_string:
            explicit = data.get("query")
            query: dict[str, Any] = parse_query(query_string)
            if isinstance(explicit, Mapping):
                query.update(explicit)
            elif explicit is not None:
                _warn(info, f"Request query must be a mapping. Received: {explicit!r}")
            data["query"] = query

        method = data.get("method", "GET")
        data["raw_method"] = method.upper() if isinstance(method, str) else "GET"
        return data

    @field_validator("method", mode="before")
    @classmethod
    def match_method(cls, value: Any, info: ValidationInfo) -> Method:
        if not isinstance(value, str):
            _warn(info, f"Request method must be a string, defaulting to GET. Received: {value!r}")
            return Method.GET
        try:
            method = Method(value.upper())
        except ValueError:
            method = Method.NOT_MATCHED
        if method is Method.NOT_MATCHED:
            _warn(info, f"Unrecognized request method: {value}")
        return method

    @field_validator("path", mode="before")
    @classmethod
    def clean_path(cls, value: Any) -> str:
        return normalize_path(value)

    @field_validator("query", mode="before")
    @classmethod
    def clean_query(cls, value: Any, info: ValidationInfo) -> dict[str, QueryValue]:
        if value is None:
            return {}
        if isinstance(value, str):
            return parse_query(value.lstrip("?"))
        if not isinstance(value, Mapping):
            _warn(info, f"Request query must be a mapping. Received: {value!r}")
            return {}

        query: dict[str, QueryValue] = {}
        for name, item in value.items():
            if isinstance(item, (list, tuple)):
                query[str(name)] = [i if i is True else str(i) for i in item]
            elif item is True or isinstance(item, str):
                query[str(name)] = item
            else:
                _warn(info, f"Query value for {name} coerced to a string. Received: {item!r}")
                query[str(name)] = "" if item is None else str(item)
        return query

    @field_validator("headers", mode="before")
    @classmethod
    def clean_headers(cls, value: Any, info: ValidationInfo) -> dict[str, str]:
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            _warn(info, f"Request headers must be a mapping. Received: {value!r}")
            return {}
        return {str(key).lower(): str(item) for key, item in value.items()}

    @field_validator("body", mode="before")
    @classmethod
    def copy_body(cls, value: Any, info: ValidationInfo) -> Any:
        try:
            return copy.deepcopy(value)
        except Exception as exc:
            _warn(info, f"Request body could not be copied, using it as is: {exc}")
            return value


class Request:
    """
    A normalized request, created once per call to ``SansServer.request``.

    Exposes three facets: ``events`` (the log channel of this request),
    ``hooks`` (one-time hooks and phase execution) and ``outcome`` (a future
    resolved with the settlement). Resources registered on ``resources``
    are released when processing ends, whichever way it ends.
    """

    def __init__(
        self,
        request_input: Any = None,
        *,
        hooks: HookRegistry | None = None,
        diagnostics: Diagnostics | None = None,
    ):
        self._id = str(uuid4())
        self.events = EventChannel()
        self.diagnostics = diagnostics or Diagnostics()
        self.hooks = HookSet(self, hooks or HookRegistry())
        self.resources = ExitStack()
        self.outcome: asyncio.Future[ResponseState] = asyncio.get_running_loop().create_future()
        self.settlement: ResponseState | None = None

        context: dict[str, Any] = {"warnings": []}
        try:
            config = RequestInput.model_validate(request_input, context=context)
        except ValidationError as exc:
            context["warnings"].append(f"Request could not be normalized, using defaults: {exc}")
            config = RequestInput()
        self.warnings: list[str] = context["warnings"]
        for warning in self.warnings:
            logger.warning(f"Request {self._id}: {warning}")

        self.method: Method = config.method
        self.raw_method: str = config.raw_method
        self.path: str = config.path
        self.query: dict[str, QueryValue] = config.query
        self.headers: dict[str, str] = config.headers
        self.body: Any = config.body

        self._response = Response(self)

    @property
    def id(self) -> str:
        return self._id

    @property
    def response(self) -> Response:
        return self._response

    @property
    def url(self) -> str:
        return self.path + build_query_string(self.query)

    def log(self, action: str, message: str = "", *, category: str = "request", **details: Any) -> Request:
        """Emit a log event on this request's channel."""
        self.events.emit(LogEvent(category=category, action=action, message=str(message), details=details))
        return self

    def __repr__(self) -> str:
        return f"<Request {self._id} {self.raw_method} {self.url}>"
