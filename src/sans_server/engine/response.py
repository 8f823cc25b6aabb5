"""Response entity: exactly-once send and the transform chain."""

from __future__ import annotations

import asyncio
import base64
import copy
import dataclasses
import http.cookies
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timezone
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel
from pydantic_core import to_json
from starlette.datastructures import MutableHeaders
from starlette.responses import Response as StarletteResponse

from sans_server.shared.exceptions import ResponseError, ResponseSentError
from sans_server.shared.logging import get_logger
from sans_server.shared.models import Cookie, ResponseSnapshot, ResponseState

if TYPE_CHECKING:
    from sans_server.engine.request import Request

logger = get_logger(__name__)

UNSET: Any = object()

Transform = Callable[["Response"], None]

SAMESITE_VALUES = ("lax", "strict", "none")


def reason_phrase(code: int) -> str:
    try:
        return HTTPStatus(code).phrase
    except ValueError:
        return str(code)


def truncate(value: Any, length: int = 40) -> str:
    text = str(value)
    return text if len(text) <= length else text[: length - 3] + "..."


def serialize_cookie(name: str, value: str, options: Mapping[str, Any]) -> str:
    """Build a Set-Cookie value with Starlette's Response.set_cookie."""
    samesite = options.get("samesite")
    if samesite is not None and str(samesite).lower() not in SAMESITE_VALUES:
        raise ResponseError(f"Cookie samesite must be one of {SAMESITE_VALUES}. Received: {samesite!r}", "ERESC")
    carrier = StarletteResponse()
    carrier.set_cookie(
        name,
        value,
        max_age=options.get("max_age"),
        expires=options.get("expires"),
        path=options.get("path"),
        domain=options.get("domain"),
        secure=bool(options.get("secure")),
        httponly=bool(options.get("httponly")),
        samesite=samesite,
    )
    return next(raw.decode("latin-1") for key, raw in carrier.raw_headers if key == b"set-cookie")


class Response:
    """
    Mutable builder for the outcome of a request.

    ``send`` may only succeed once. After the settlement has been captured
    the response is frozen: further mutations are logged and ignored.
    """

    def __init__(self, request: Request):
        self._request = request
        self._status_code = 0
        self._body: Any = ""
        self._headers = MutableHeaders()
        self._cookies: dict[str, Cookie] = {}
        self._sent = False
        self._delivered = False
        self._error: BaseException | None = None
        self._sent_event = asyncio.Event()

    @property
    def req(self) -> Request:
        return self._request

    @property
    def sent(self) -> bool:
        return self._sent

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def status_code(self) -> int:
        return self._status_code

    @status_code.setter
    def status_code(self, code: int) -> None:
        self.status(code)

    @property
    def body(self) -> Any:
        return self._body

    @body.setter
    def body(self, value: Any) -> None:
        if self._writable("set-body"):
            self._body = value
            self.log("set-body", truncate(value))

    @property
    def headers(self) -> dict[str, str]:
        return dict(self._headers.items())

    @property
    def cookies(self) -> list[Cookie]:
        return [c.model_copy(deep=True) for c in self._cookies.values()]

    @property
    def state(self) -> ResponseSnapshot:
        """A deep copy of the current state; changing it never affects the response."""
        return ResponseSnapshot(
            body=_copy(self._body),
            cookies=self.cookies,
            headers=self.headers,
            sent=self._sent,
            status_code=self._status_code,
        )

    def log(self, action: str, message: str = "", **details: Any) -> Response:
        self._request.log(action, message, category="response", **details)
        return self

    def status(self, code: int) -> Response:
        if isinstance(code, bool) or not isinstance(code, int) or code < 0:
            raise ResponseError(f"Status code must be a non-negative integer. Received {code!r}", "ERST")
        if self._writable("set-status"):
            self._status_code = code
            self.log("set-status", str(code))
        return self

    def set(self, key: str, value: str) -> Response:
        """Set a header, replacing any value set before under the same case-insensitive name."""
        if not isinstance(key, str) or not key:
            raise ResponseError(f"Header key must be a non-empty string. Received {key!r}", "ERHDR")
        if not isinstance(value, str):
            raise ResponseError(f"Header value must be a string. Received {value!r}", "ERHDR")
        if self._writable("set-header"):
            try:
                self._headers[key] = value
            except UnicodeEncodeError as exc:
                raise ResponseError(f"Header {key} is not latin-1 encodable: {exc}", "ERHDR") from exc
            self.log("set-header", f"{key.lower()}:{value}")
        return self

    set_header = set

    def clear_header(self, key: str) -> Response:
        if key in self._headers and self._writable("clear-header"):
            value = self._headers[key]
            del self._headers[key]
            self.log("clear-header", f"{key.lower()}:{value}")
        return self

    def cookie(
        self,
        name: str,
        value: str | int,
        *,
        max_age: int | None = None,
        expires: datetime | str | None = None,
        path: str | None = None,
        domain: str | None = None,
        secure: bool = False,
        httponly: bool = False,
        samesite: str | None = None,
    ) -> Response:
        """
        Set a cookie. Setting the same name again replaces the earlier cookie.

        Args:
            name: Cookie name
            value: Cookie value, numbers are converted to strings
            max_age: Lifetime in seconds
            expires: Expiry date or preformatted date string
            path: Path scope
            domain: Domain scope
            secure: Only send over HTTPS
            httponly: Hide from client side scripts
            samesite: lax, strict or none

        Returns:
            This response

        Raises:
            ResponseError: If the name or value is invalid
        """
        if not isinstance(name, str) or not name:
            raise ResponseError(f"Cookie name must be a non-empty string. Received: {name!r}", "ERESC")
        if isinstance(value, bool) or not isinstance(value, (str, int)):
            raise ResponseError(f"Cookie value must be a number or string. Received: {value!r}", "ERESC")

        value = str(value)
        options = {
            key: option
            for key, option in (
                ("max_age", max_age),
                ("expires", expires),
                ("path", path),
                ("domain", domain),
                ("secure", secure),
                ("httponly", httponly),
                ("samesite", samesite),
            )
            if option is not None and option is not False
        }
        try:
            serialized = serialize_cookie(name, value, options)
        except http.cookies.CookieError as exc:
            raise ResponseError(f"Invalid cookie {name}: {exc}", "ERESC") from exc

        if self._writable("set-cookie"):
            self._cookies[name] = Cookie(name=name, value=value, options=options, serialized=serialized)
            self.log("set-cookie", f"{name}:{value}")
        return self

    def clear_cookie(self, name: str, **options: Any) -> Response:
        """Replace a cookie with an expired one. Domain and path must match for the client to drop it."""
        options["expires"] = datetime.fromtimestamp(0, tz=timezone.utc)
        options.pop("max_age", None)
        self.log("clear-cookie", name)
        return self.cookie(name, "", **options)

    def reset(self) -> Response:
        """Reset status, headers, cookies and body. The sent flag is kept."""
        if self._writable("reset"):
            self._body = ""
            self._cookies = {}
            self._headers = MutableHeaders()
            self._status_code = 0
            self.log("reset", "Response data reset")
        return self

    def redirect(self, url: str) -> Response:
        if not isinstance(url, str):
            raise ResponseError(f"Redirect URL must be a string. Received {url!r}", "ERRD")
        if self._sent:
            return self.send()
        return self.status(302).set("location", url).send()

    def send(self, body: Any = UNSET, *, status: int | None = None, headers: Mapping[str, str] | None = None) -> Response:
        """
        Send the response.

        Args:
            body: Replaces the current body when given
            status: Replaces the current status code when given
            headers: Headers to set before sending

        Returns:
            This response

        A second send is reported on the diagnostics emitter and otherwise
        ignored.
        """
        if self._sent:
            err = ResponseSentError(f"Response already sent for {self._request.id}")
            self.log("send-conflict", str(err))
            self._request.diagnostics.emit("error", err)
            return self

        if status is not None:
            self.status(status)
        for key, value in (headers or {}).items():
            self.set(key, value)
        if body is not UNSET:
            self.body = body
        if self._status_code == 0:
            self.status(200)

        self._sent = True
        self.log("send", f"{self._status_code} {truncate(self._body)}")
        self._sent_event.set()
        return self

    def send_status(self, code: int) -> Response:
        if self._sent:
            return self.send()
        self.log("send-status", str(code))
        return self.status(code).set("content-type", "text/plain").send(reason_phrase(code))

    async def wait_sent(self) -> None:
        await self._sent_event.wait()

    def fail(self, error: BaseException) -> Response:
        """Discard everything set so far and make the error the body."""
        self.reset()
        self._body = error
        if not self._sent:
            self.send()
        return self

    def deliver(self, transforms: Iterable[Transform] = ()) -> ResponseState:
        """
        Run the transform chain once and freeze the response.

        Each transform runs in isolation: when one raises, the exception
        becomes the body and the rest of the chain still runs. An exception
        body left at the end is converted by the error rule.
        """
        if self._delivered:
            raise ResponseSentError(f"Response already delivered for {self._request.id}")

        for transform in (*TRANSFORMS, *transforms):
            try:
                transform(self)
            except Exception as exc:
                self.log("transform", f"Transform failed: {exc}", transform=getattr(transform, "__name__", repr(transform)))
                self._body = exc
        if isinstance(self._body, BaseException):
            convert_error(self)

        self._delivered = True
        headers = self.headers
        cookies = self.cookies
        raw_headers = [f"{key}: {value}" for key, value in headers.items()]
        raw_headers.extend(f"Set-Cookie: {c.serialized}" for c in cookies)
        return ResponseState(
            body=_copy(self._body),
            cookies=cookies,
            headers=headers,
            raw_headers="\n".join(raw_headers),
            status_code=self._status_code,
            error=self._error,
        )

    def _writable(self, action: str) -> bool:
        if self._delivered:
            message = f"Response for {self._request.id} was already delivered, {action} ignored"
            logger.warning(message)
            self.log(action, message)
            return False
        return True

    def __repr__(self) -> str:
        return f"<Response {self._status_code} sent={self._sent}>"


def convert_error(res: Response) -> None:
    """Error body: reset and answer 500 with the standard reason phrase."""
    body = res.body
    if not isinstance(body, BaseException):
        return
    res.log("transform", "Converting error to response", error=repr(body))
    res.reset()
    res._error = body
    res.status(500).set("content-type", "text/plain")
    res.body = reason_phrase(500)


def convert_binary(res: Response) -> None:
    body = res.body
    if isinstance(body, (bytes, bytearray, memoryview)):
        res.log("transform", "Converting binary body to base64")
        res.body = base64.b64encode(bytes(body)).decode("ascii")
        if "content-type" not in res.headers:
            res.set("content-type", "application/octet-stream")


def convert_structured(res: Response) -> None:
    body = res.body
    structured = isinstance(body, (dict, list, tuple, BaseModel)) or (
        dataclasses.is_dataclass(body) and not isinstance(body, type)
    )
    if structured:
        res.log("transform", "Converting object to JSON string")
        res.body = to_json(body).decode()
        if "content-type" not in res.headers:
            res.set("content-type", "application/json")


def convert_text(res: Response) -> None:
    body = res.body
    if body is None:
        res.body = ""
    elif not isinstance(body, str):
        res.log("transform", f"Converting {type(body).__name__} to text")
        res.body = str(body)
        if "content-type" not in res.headers:
            res.set("content-type", "text/plain")


def default_content_type(res: Response) -> None:
    if "content-type" not in res.headers:
        res.log("transform", "Modify content type")
        res.set("content-type", "text/html")


TRANSFORMS: tuple[Transform, ...] = (
    convert_error,
    convert_binary,
    convert_structured,
    convert_text,
    default_content_type,
)


def _copy(value: Any) -> Any:
    if isinstance(value, BaseException):
        return value
    return copy.deepcopy(value)
