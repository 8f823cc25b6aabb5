"""Hooks every server installs, and the request timer."""

import asyncio
from collections.abc import Callable, Iterable

from pydantic_core import from_json

from sans_server.engine.middleware import RESPONSE
from sans_server.engine.request import Request
from sans_server.engine.response import Response
from sans_server.shared.models import Method

Next = Callable[..., None]


def arm_timeout(req: Request, res: Response, seconds: float) -> asyncio.TimerHandle:
    """
    Arm a timer that answers 504 when nothing was sent within ``seconds``.

    The timer is released with the request's resources and disarmed by a
    one-time response hook once the response phase starts.
    """
    loop = asyncio.get_running_loop()

    def expire() -> None:
        if not res.sent:
            req.log("timeout", f"No response after {seconds} seconds")
            res.send_status(504)

    handle = loop.call_later(seconds, expire)
    req.resources.callback(handle.cancel)

    def timeout_clear(req: Request, res: Response, next: Next) -> None:
        handle.cancel()
        next()

    req.hooks.add(RESPONSE, timeout_clear, weight=100000)
    return handle


def method_check(supported: Iterable[Method]) -> Callable[[Request, Response, Next], None]:
    allowed = frozenset(supported)

    def valid_method(req: Request, res: Response, next: Next) -> None:
        if req.method in allowed:
            next()
        else:
            req.log("method", f"Method {req.raw_method} is not supported")
            res.send_status(405)

    return valid_method


def parse_json_body(req: Request, res: Response, next: Next) -> None:
    """Replace a raw JSON body with the parsed value; malformed JSON is answered with 400."""
    content_type = req.headers.get("content-type", "").split(";", 1)[0].strip().lower()
    if content_type == "application/json" and isinstance(req.body, (str, bytes)) and req.body:
        try:
            req.body = from_json(req.body)
        except ValueError as exc:
            req.log("body", f"Malformed JSON body: {exc}")
            res.send_status(400)
            return
    next()


def request_error(err: BaseException, req: Request, res: Response, next: Next) -> None:
    req.log("error", repr(err))
    if not res.sent:
        res.send(err)
    next()


def response_error(err: BaseException, req: Request, res: Response, next: Next) -> None:
    res.log("error", repr(err))
    res.body = err
    next()


def unhandled(req: Request, res: Response) -> None:
    """Answer a request that no hook sent a response for."""
    req.log("unhandled", "request not handled")
    if res.status_code == 0:
        res.send_status(404)
    else:
        res.send()
