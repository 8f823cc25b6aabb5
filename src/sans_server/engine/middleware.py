"""Hook phases, per-request hook sets and the chain runner."""

from __future__ import annotations

import asyncio
import inspect
import itertools
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sans_server.shared.exceptions import HookError
from sans_server.shared.logging import format_seconds, get_logger

if TYPE_CHECKING:
    from sans_server.engine.request import Request
    from sans_server.engine.response import Response

logger = get_logger(__name__)

Handler = Callable[..., Any]


@dataclass(frozen=True)
class Phase:
    """
    A named stage of hook execution.

    Reverse phases run as a stack: highest weight first, and among equal
    weights the most recently registered hook first. Phases that halt on
    send stop dispatching as soon as the response has been sent.
    """

    name: str
    reverse: bool = False
    halt_on_send: bool = True


REQUEST = Phase("request")
RESPONSE = Phase("response", reverse=True, halt_on_send=False)


def is_error_handler(fn: Handler) -> bool:
    """A hook handles errors when it requires (err, req, res, next); parameters with defaults do not count."""
    try:
        parameters = inspect.signature(fn).parameters.values()
    except (TypeError, ValueError):
        return False
    positional = [
        p for p in parameters
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
        and p.default is inspect.Parameter.empty
    ]
    return len(positional) >= 4


def handler_name(fn: Handler) -> str | None:
    name = getattr(fn, "__name__", None)
    if not name or name == "<lambda>":
        return None
    return name


@dataclass
class HookEntry:
    """A handler registered against a phase."""

    weight: int
    handler: Handler
    name: str
    error_handler: bool
    order: int

    @property
    def key(self) -> tuple[int, int]:
        return (self.weight, self.order)


@dataclass
class HookRegistry:
    """
    Phases and their hook entries.

    The server owns one registry; every request works on a fork of it so
    that one-time hooks stay scoped to that request.
    """

    phases: dict[str, Phase] = field(default_factory=dict)
    entries: dict[str, list[HookEntry]] = field(default_factory=dict)
    _counter: itertools.count = field(default_factory=itertools.count, repr=False)
    # handler tasks still running, shared by every fork
    tasks: set[asyncio.Task] = field(default_factory=set, repr=False)

    def __post_init__(self) -> None:
        for phase in (REQUEST, RESPONSE):
            if phase.name not in self.phases:
                self.define(phase.name, reverse=phase.reverse, halt_on_send=phase.halt_on_send)

    def define(self, name: str, *, reverse: bool = False, halt_on_send: bool | None = None) -> Phase:
        if not isinstance(name, str) or not name:
            raise HookError(f"Phase name must be a non-empty string. Received: {name!r}")
        if name in self.phases:
            raise HookError(f"There is already a hook runner defined for this type: {name}")
        phase = Phase(name, reverse=reverse, halt_on_send=not reverse if halt_on_send is None else halt_on_send)
        self.phases[name] = phase
        self.entries[name] = []
        logger.debug(f"Defined hook phase {name}", extra={"reverse": phase.reverse})
        return phase

    def resolve(self, phase: Phase | str) -> Phase:
        name = phase.name if isinstance(phase, Phase) else phase
        if not isinstance(name, str) or name not in self.phases:
            raise HookError(f"Unknown hook phase: {phase!r}")
        return self.phases[name]

    def add(self, phase: Phase | str, *handlers: Handler, weight: int = 0) -> list[HookEntry]:
        resolved = self.resolve(phase)
        if isinstance(weight, bool) or not isinstance(weight, int):
            raise HookError(f"Hook weight must be an integer. Received: {weight!r}")
        for fn in handlers:
            if not callable(fn):
                raise HookError(f"Invalid hook specified. Expected a callable. Received: {fn!r}")

        store = self.entries[resolved.name]
        added = []
        for fn in handlers:
            name = handler_name(fn) or str(len(store) + 1)
            entry = HookEntry(
                weight=weight,
                handler=fn,
                name=f"{resolved.name}:{name}",
                error_handler=is_error_handler(fn),
                order=next(self._counter),
            )
            store.append(entry)
            added.append(entry)
        return added

    def fork(self) -> HookRegistry:
        registry = HookRegistry(phases=dict(self.phases), tasks=self.tasks)
        for name, store in self.entries.items():
            registry.entries[name] = list(store)
        # One-time hooks continue the registration order of the server
        last = max((e.order for store in self.entries.values() for e in store), default=-1)
        registry._counter = itertools.count(last + 1)
        return registry

    def next_entry(self, phase: Phase, cursor: tuple[int, int] | None) -> HookEntry | None:
        """
        Pick the entry that follows ``cursor`` in dispatch order.

        The live entry list is consulted on every call, so hooks added while
        the phase is running are honored if they sort after the cursor.
        """
        candidates = self.entries[phase.name]
        if phase.reverse:
            ahead = [e for e in candidates if cursor is None or e.key < cursor]
            return max(ahead, key=lambda e: e.key, default=None)
        ahead = [e for e in candidates if cursor is None or e.key > cursor]
        return min(ahead, key=lambda e: e.key, default=None)


class HookSet:
    """The hook facet of a request: one-time hooks and phase execution."""

    def __init__(self, request: Request, registry: HookRegistry):
        self._request = request
        self._registry = registry

    @property
    def registry(self) -> HookRegistry:
        return self._registry

    def phase(self, name: str) -> Phase:
        return self._registry.resolve(name)

    def add(self, phase: Phase | str, *handlers: Handler, weight: int = 0) -> HookSet:
        """Add hooks that only apply to this request."""
        self._registry.add(phase, *handlers, weight=weight)
        return self

    async def run(self, phase: Phase | str) -> None:
        """
        Run a phase against this request.

        Raises:
            The error still in flight when the phase is exhausted
        """
        resolved = self._registry.resolve(phase)
        error = await ChainRunner(self._registry, resolved).run(self._request, self._request.response)
        if error is not None:
            raise error


class ChainRunner:
    """
    Dispatches the hooks of one phase to a request/response pair.

    The runner state is the cursor into the ordered entries and the error
    currently in flight; each iteration dispatches one entry and waits for
    its ``next`` call, its failure, or the response being sent.
    """

    def __init__(self, registry: HookRegistry, phase: Phase):
        self._registry = registry
        self._phase = phase

    async def run(self, req: Request, res: Response, error: BaseException | None = None) -> BaseException | None:
        """
        Run the chain.

        Args:
            req: The request being processed
            res: Its response
            error: Error to start the chain in error mode with

        Returns:
            The error left unhandled when the chain was exhausted, otherwise None
        """
        phase = self._phase
        cursor: tuple[int, int] | None = None

        while True:
            if phase.halt_on_send and res.sent:
                return None

            entry = self._registry.next_entry(phase, cursor)
            if entry is None:
                return error
            cursor = entry.key

            if error is not None and not entry.error_handler:
                req.log("skip", "Has error and hook is not error handling", category=entry.name, phase=phase.name)
                continue
            if error is None and entry.error_handler:
                req.log("skip", "No error and hook is for error handling", category=entry.name, phase=phase.name)
                continue

            error = await self._dispatch(entry, req, res, error)
            if error is not None and phase.halt_on_send and res.sent:
                req.log("error", f"Error after the response was sent: {error!r}", category=entry.name, phase=phase.name)
                req.diagnostics.emit("error", error)
                return None

    async def _dispatch(
        self, entry: HookEntry, req: Request, res: Response, error: BaseException | None
    ) -> BaseException | None:
        loop = asyncio.get_running_loop()
        done: asyncio.Future[BaseException | None] = loop.create_future()
        phase = self._phase
        start = time.perf_counter()
        abandoned = False

        def next_(err: BaseException | None = None) -> None:
            if done.done() or abandoned:
                req.log("next", "next called after the hook completed", category=entry.name, phase=phase.name)
                return
            req.log(
                "end",
                f"Run duration: {format_seconds(time.perf_counter() - start)}",
                category=entry.name,
                phase=phase.name,
            )
            done.set_result(err)

        def task_done(task: asyncio.Future) -> None:
            if task.cancelled() or task.exception() is None:
                return
            if done.done() or abandoned:
                # the chain moved on, nobody is left to handle this error
                req.diagnostics.emit("error", task.exception())
            else:
                next_(task.exception())

        args = (req, res, next_) if error is None else (error, req, res, next_)
        req.log("start", "", category=entry.name, phase=phase.name)

        try:
            result = entry.handler(*args)
        except Exception as exc:
            next_(exc)
            result = None

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._registry.tasks.add(task)
            task.add_done_callback(self._registry.tasks.discard)
            task.add_done_callback(task_done)

        sent_waiter = None
        if phase.halt_on_send and not done.done():
            sent_waiter = asyncio.ensure_future(res.wait_sent())

        try:
            waiters = {f for f in (done, sent_waiter) if f is not None}
            while not done.done():
                if phase.halt_on_send and res.sent:
                    abandoned = True
                    req.log("halt", "Response sent before the hook completed", category=entry.name)
                    return None
                await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if sent_waiter is not None and not sent_waiter.done():
                sent_waiter.cancel()

        return done.result()
