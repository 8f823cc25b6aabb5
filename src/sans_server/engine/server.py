"""
Sans-server facade.
Runs requests through the hook pipeline without any transport attached.
"""

import asyncio
import time
from collections.abc import Callable, Mapping
from typing import Any

from sans_server.engine import builtins
from sans_server.engine.events import Diagnostics
from sans_server.engine.middleware import REQUEST, RESPONSE, ChainRunner, Handler, HookRegistry, Phase
from sans_server.engine.request import Request
from sans_server.engine.request_log import RequestLog
from sans_server.engine.response import Response, Transform
from sans_server.shared.config import ServerSettings, get_settings
from sans_server.shared.exceptions import HookError
from sans_server.shared.logging import get_logger, setup_logging
from sans_server.shared.models import ResponseState

logger = get_logger(__name__)

Callback = Callable[[BaseException | None, ResponseState], Any]


class SansServer:
    """Processes requests through ordered hook phases and settles each one exactly once."""

    def __init__(
        self,
        settings: ServerSettings | Mapping[str, Any] | None = None,
        *,
        diagnostics: Diagnostics | None = None,
    ) -> None:
        if settings is None:
            settings = get_settings()
        elif isinstance(settings, Mapping):
            settings = ServerSettings(**settings)
        self.settings: ServerSettings = settings
        self.diagnostics = diagnostics or Diagnostics()
        self._registry = HookRegistry()
        self._transforms: list[Transform] = []
        self._tasks: set[asyncio.Task] = set()
        self.setup_hooks()

    def setup_hooks(self) -> None:
        """Install the built-in hooks."""
        settings = self.settings
        if settings.method_check:
            self._registry.add(REQUEST, builtins.method_check(settings.supported_methods), weight=-100000)
        self._registry.add(REQUEST, builtins.parse_json_body, weight=-50000)
        self._registry.add(REQUEST, builtins.request_error, weight=100000)
        self._registry.add(RESPONSE, builtins.response_error, weight=-100000)

    def define_phase(self, name: str, *, reverse: bool = False) -> Phase:
        """
        Define a custom hook phase.

        Args:
            name: Unique phase name
            reverse: Run hooks as a stack, most recently added first

        Returns:
            The phase, usable with hook() and Request.hooks.run()

        Raises:
            HookError: If a phase with that name exists
        """
        return self._registry.define(name, reverse=reverse)

    def phase(self, name: str) -> Phase:
        return self._registry.resolve(name)

    def hook(self, phase: Phase | str, *handlers: Handler, weight: int = 0) -> "SansServer":
        """Register hooks that apply to every request."""
        if not handlers:
            raise HookError(f"No hook specified for phase {phase!r}")
        self._registry.add(phase, *handlers, weight=weight)
        return self

    def use(self, *middleware: Handler) -> "SansServer":
        """Register request phase middleware, in order, with weight 0."""
        return self.hook(REQUEST, *middleware)

    def transform(self, fn: Transform) -> "SansServer":
        """Append a body transform that runs after the built-in ones when a response is delivered."""
        if not callable(fn):
            raise HookError(f"Invalid transform specified. Expected a callable. Received: {fn!r}")
        self._transforms.append(fn)
        return self

    def request(self, request_input: Any = None, callback: Callback | None = None) -> Request:
        """
        Have the server process a request.

        Must be called while an event loop is running. Never raises for a
        malformed request; problems end up in the response instead.

        The timeout is armed when processing starts and answers 504 if nothing
        was sent in time. The response phase gets its own timeout window, so a
        request can take up to twice the timeout before it settles.

        Args:
            request_input: A path string (GET) or a mapping with method, path, query, headers and body
            callback: Called with (error, state) once the request has settled

        Returns:
            The request; await ``request.outcome`` for the settlement
        """
        start = time.time()
        req = Request(request_input, hooks=self._registry.fork(), diagnostics=self.diagnostics)

        request_log = None
        if not self.settings.logs.silent:
            request_log = RequestLog(self.settings.logs, req, start)
            req.events.subscribe(request_log.record)

        for warning in req.warnings:
            req.log("warning", warning)
        req.log("start", f"{req.raw_method} {req.url}", headers=req.headers, query=req.query)

        if callback is not None:
            req.outcome.add_done_callback(lambda future: self._notify(callback, req, future))

        task = asyncio.get_running_loop().create_task(self._process(req, request_log))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return req

    async def _process(self, req: Request, request_log: RequestLog | None) -> None:
        res = req.response
        try:
            with req.resources:
                if self.settings.timeout:
                    builtins.arm_timeout(req, res, self.settings.timeout)
                await self._run_phases(req, res)
        except Exception as exc:
            logger.exception(f"Request {req.id} failed due to unexpected error: {exc}")
            self.diagnostics.emit("error", exc)
            res.fail(exc)

        state = res.deliver(self._transforms)
        req.settlement = state
        req.log("end", f"{state.status_code} response status")

        if self.settings.rejectable and state.error is not None:
            req.outcome.set_exception(state.error)
        else:
            req.outcome.set_result(state)

        if request_log is not None:
            request_log.flush(state)
        req.events.clear()

    async def _run_phases(self, req: Request, res: Response) -> None:
        error = await ChainRunner(req.hooks.registry, REQUEST).run(req, res)
        if error is not None:
            req.log("error", f"Unhandled error: {error!r}")
            res.fail(error)
        elif not res.sent:
            builtins.unhandled(req, res)

        error = await self._run_response_phase(req, res)
        if error is not None:
            res.log("error", f"Unhandled error: {error!r}")
            res.fail(error)

    async def _run_response_phase(self, req: Request, res: Response) -> BaseException | None:
        runner = ChainRunner(req.hooks.registry, RESPONSE)
        if not self.settings.timeout:
            return await runner.run(req, res)
        try:
            return await asyncio.wait_for(runner.run(req, res), timeout=self.settings.timeout)
        except asyncio.TimeoutError:
            res.log("timeout", f"Response hooks did not complete within {self.settings.timeout} seconds")
            return None

    def _notify(self, callback: Callback, req: Request, future: asyncio.Future) -> None:
        error = None if future.cancelled() else future.exception()
        state = req.settlement
        try:
            callback(error or (state.error if state else None), state)
        except Exception as exc:
            self.diagnostics.emit("error", exc)


def create_server(
    settings: ServerSettings | Mapping[str, Any] | None = None,
    *,
    configure_logging: bool = False,
    **overrides: Any,
) -> SansServer:
    """
    Create a server; keyword arguments override individual settings.

    With ``configure_logging`` the root logger is set up at the configured
    ``log_level``, for applications that do not configure logging themselves.
    """
    if overrides:
        if isinstance(settings, ServerSettings):
            base = settings.model_dump()
        else:
            base = dict(settings or {})
        settings = ServerSettings(**{**base, **overrides})
    server = SansServer(settings)
    if configure_logging:
        setup_logging(server.settings.log_level)
        logger.info(f"Logging configured at {server.settings.log_level}")
    return server
