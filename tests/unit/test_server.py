"""
Unit tests for the server facade: built-in hooks, settlement and request logs.
"""

import asyncio
import logging
import time

import pytest
from pydantic import ValidationError

from sans_server.engine.server import SansServer, create_server
from sans_server.shared.config import ServerSettings
from sans_server.shared.exceptions import ResponseSentError
from sans_server.shared.models import Method


def run(server, request_input=None, callback=None):
    async def go():
        return await server.request(request_input, callback).outcome

    return asyncio.run(go())


class TestBuiltinHooks:
    """Tests for the hooks every server installs."""

    def test_unhandled_request_is_404(self, process):
        state = process()
        assert state.status_code == 404
        assert state.body == "Not Found"
        assert state.headers["content-type"] == "text/plain"

    def test_status_without_send_is_kept(self, server, process):
        def set_status(req, res, next):
            res.status(204)
            next()

        server.use(set_status)
        assert process().status_code == 204

    def test_unsupported_method_is_405(self, process):
        state = process({"method": "FOO"})
        assert state.status_code == 405
        assert state.body == "Method Not Allowed"

    def test_method_outside_supported_set(self):
        server = SansServer(ServerSettings(logs="silent", supported_methods=["get"]))
        assert run(server, {"method": "POST"}).status_code == 405
        assert run(server, {"method": "GET"}).status_code == 404

    def test_method_check_disabled(self):
        server = SansServer(ServerSettings(logs="silent", method_check=False))
        assert run(server, {"method": "FOO"}).status_code == 404

    def test_query_from_path(self, server, process):
        seen = {}

        def capture(req, res, next):
            seen.update(req.query)
            res.send(req.path)

        server.use(capture)
        state = process("/foo?abc&def=bar")
        assert seen == {"abc": True, "def": "bar"}
        assert state.body == "/foo"

    def test_structured_body_is_json(self, server, process):
        server.use(lambda req, res, next: res.send({"a": 1}))
        state = process()
        assert state.body == '{"a":1}'
        assert state.headers["content-type"] == "application/json"

    def test_json_request_body_parsed(self, server, process):
        server.use(lambda req, res, next: res.send({"received": req.body}))
        state = process(
            {"method": "POST", "headers": {"Content-Type": "application/json"}, "body": '{"a":[1,2]}'}
        )
        assert state.body == '{"received":{"a":[1,2]}}'

    def test_malformed_json_body_is_400(self, server, process):
        calls = []
        server.use(lambda req, res, next: calls.append("reached"))
        state = process({"method": "POST", "headers": {"content-type": "application/json"}, "body": "{nope"})
        assert state.status_code == 400
        assert calls == []

    def test_custom_transform(self, server, process):
        def shout(res):
            res.body = res.body.upper()

        server.transform(shout).use(lambda req, res, next: res.send("quiet"))
        assert process().body == "QUIET"


class TestTimeout:
    """Tests for the request timeout."""

    def test_timeout_sends_504(self):
        server = SansServer(ServerSettings(logs="silent", timeout=0.05))
        server.use(lambda req, res, next: None)
        start = time.perf_counter()
        state = run(server)
        assert time.perf_counter() - start >= 0.05
        assert state.status_code == 504
        assert state.body == "Gateway Timeout"

    def test_timeout_armed_before_every_hook(self):
        """The timer starts with the request, not with a hook that might never be reached."""
        server = SansServer(ServerSettings(logs="silent", timeout=0.05))
        server.hook("request", lambda req, res, next: None, weight=-300000)

        async def go():
            return await asyncio.wait_for(server.request().outcome, timeout=1)

        assert asyncio.run(go()).status_code == 504

    def test_response_phase_bounded_by_timeout(self):
        server = SansServer(ServerSettings(logs="silent", timeout=0.05))
        server.use(lambda req, res, next: res.send("ok"))
        server.hook("response", lambda req, res, next: None)
        start = time.perf_counter()

        async def go():
            return await asyncio.wait_for(server.request().outcome, timeout=1)

        state = asyncio.run(go())
        assert time.perf_counter() - start >= 0.05
        assert state.status_code == 200
        assert state.body == "ok"

    def test_timeout_disabled_leaves_request_pending(self):
        server = SansServer(ServerSettings(logs="silent", timeout=0))
        server.use(lambda req, res, next: None)

        async def go():
            req = server.request()
            await asyncio.sleep(0.05)
            return req.outcome.done()

        assert asyncio.run(go()) is False

    def test_timer_cleared_after_send(self, diagnostics):
        """A request answered in time never triggers the timeout."""
        server = SansServer(ServerSettings(logs="silent", timeout=0.05), diagnostics=diagnostics)
        reported = []
        diagnostics.on("error", reported.append)
        server.use(lambda req, res, next: res.send("fast"))

        async def go():
            state = await server.request().outcome
            await asyncio.sleep(0.1)
            return state

        state = asyncio.run(go())
        assert state.status_code == 200
        assert reported == []

    def test_next_after_timeout_is_ignored(self, diagnostics):
        server = SansServer(ServerSettings(logs="silent", timeout=0.05), diagnostics=diagnostics)
        reported = []
        diagnostics.on("error", reported.append)
        saved = []
        server.use(lambda req, res, next: saved.append(next))

        async def go():
            state = await server.request().outcome
            saved[0]()
            saved[0](ValueError("too late"))
            return state

        assert asyncio.run(go()).status_code == 504
        assert reported == []


class TestSettlement:
    """Tests for the outcome and the callback."""

    def test_resolves_with_500_by_default(self, server, process):
        def explode(req, res, next):
            raise ValueError("broken")

        server.use(explode)
        state = process()
        assert state.status_code == 500
        assert isinstance(state.error, ValueError)

    def test_rejectable_rejects_with_error(self):
        server = SansServer(ServerSettings(logs="silent", rejectable=True))

        def explode(req, res, next):
            raise ValueError("broken")

        server.use(explode)
        with pytest.raises(ValueError, match="broken"):
            run(server)

    def test_rejectable_resolves_without_error(self):
        server = SansServer(ServerSettings(logs="silent", rejectable=True))
        assert run(server).status_code == 404

    def test_callback_receives_error_and_state(self, server):
        received = []

        def explode(req, res, next):
            raise KeyError("k")

        server.use(explode)

        async def go():
            await server.request("/", lambda err, state: received.append((err, state))).outcome
            await asyncio.sleep(0)

        asyncio.run(go())
        [(error, state)] = received
        assert isinstance(error, KeyError)
        assert state.status_code == 500

    def test_callback_without_error(self, server):
        received = []

        async def go():
            await server.request("/", lambda err, state: received.append((err, state))).outcome
            await asyncio.sleep(0)

        asyncio.run(go())
        assert received[0][0] is None
        assert received[0][1].status_code == 404

    def test_failing_callback_reported(self, server, diagnostics):
        reported = []
        diagnostics.on("error", reported.append)

        def callback(err, state):
            raise RuntimeError("callback bug")

        async def go():
            await server.request("/", callback).outcome
            await asyncio.sleep(0)

        asyncio.run(go())
        assert str(reported[0]) == "callback bug"

    def test_send_then_next_is_not_404(self, server, process):
        def send_and_continue(req, res, next):
            res.send("done")
            next()

        server.use(send_and_continue)
        state = process()
        assert state.status_code == 200
        assert state.body == "done"

    def test_double_send_reported(self, server, process, diagnostics):
        reported = []
        diagnostics.on("error", reported.append)

        def send_twice(req, res, next):
            res.send("one")
            res.send("two")

        server.use(send_twice)
        assert process().body == "one"
        assert isinstance(reported[0], ResponseSentError)

    def test_settlement_recorded_on_request(self, server):
        async def go():
            req = server.request("/x")
            state = await req.outcome
            return req, state

        req, state = asyncio.run(go())
        assert req.settlement is state

    def test_request_requires_running_loop(self, server):
        with pytest.raises(RuntimeError):
            server.request("/")


class TestRequestLog:
    """Tests for grouped and per-event log output."""

    def test_grouped_log_is_one_block(self, caplog):
        caplog.set_level(logging.INFO)
        server = SansServer(ServerSettings(timeout=2))

        async def go():
            req = server.request("/foo?a=1")
            await req.outcome
            return req

        req = asyncio.run(go())
        blocks = [r.getMessage() for r in caplog.records if r.name == "sans_server.engine.request_log"]
        assert len(blocks) == 1
        lines = blocks[0].splitlines()
        assert lines[0] == "404 GET /foo?a=1"
        assert f"  ID: {req.id}" in lines
        assert "  Events:" in lines
        assert any("request:valid_method" in line for line in lines)

    def test_redirect_shown_in_block(self, caplog):
        caplog.set_level(logging.INFO)
        server = SansServer(ServerSettings(timeout=2))
        server.use(lambda req, res, next: res.redirect("/login"))
        run(server)
        [block] = [r.getMessage() for r in caplog.records if r.name == "sans_server.engine.request_log"]
        assert "  Redirect To: /login" in block.splitlines()

    def test_ungrouped_log_per_event(self, caplog):
        caplog.set_level(logging.INFO)
        server = SansServer(ServerSettings(timeout=2, logs={"grouped": False}))

        async def go():
            req = server.request()
            await req.outcome
            return req

        req = asyncio.run(go())
        lines = [r.getMessage() for r in caplog.records if r.name == "sans_server.engine.request_log"]
        assert len(lines) > 1
        assert all(req.id in line for line in lines)

    def test_silent_writes_nothing(self, caplog, process):
        caplog.set_level(logging.INFO)
        process()
        assert not [r for r in caplog.records if r.name == "sans_server.engine.request_log"]


class TestSettings:
    """Tests for settings parsing and server construction."""

    def test_defaults(self):
        settings = ServerSettings()
        assert settings.timeout == 30
        assert settings.logs.grouped is True
        assert settings.method_check is True
        assert Method.NOT_MATCHED not in settings.supported_methods

    @pytest.mark.parametrize("shortcut, field", [("silent", "silent"), ("verbose", "verbose")])
    def test_logs_shortcuts(self, shortcut, field):
        assert getattr(ServerSettings(logs=shortcut).logs, field) is True

    def test_unknown_logs_shortcut(self):
        with pytest.raises(ValidationError):
            ServerSettings(logs="abc")

    def test_negative_timeout_rejected(self):
        with pytest.raises(ValidationError):
            ServerSettings(timeout=-1)

    def test_supported_methods_upper_cased(self):
        settings = ServerSettings(supported_methods=["get", "Post"])
        assert settings.supported_methods == [Method.GET, Method.POST]

    def test_not_matched_cannot_be_supported(self):
        with pytest.raises(ValidationError):
            ServerSettings(supported_methods=["NOT_MATCHED"])

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("SANS_SERVER_TIMEOUT", "5")
        monkeypatch.setenv("SANS_SERVER_LOGS__GROUPED", "false")
        settings = ServerSettings()
        assert settings.timeout == 5
        assert settings.logs.grouped is False

    def test_server_accepts_mapping(self):
        server = SansServer({"logs": "silent", "timeout": 1})
        assert server.settings.timeout == 1
        assert server.settings.logs.silent is True

    def test_create_server_overrides(self):
        server = create_server(ServerSettings(logs="silent"), rejectable=True, timeout=0)
        assert server.settings.rejectable is True
        assert server.settings.timeout == 0
        assert server.settings.logs.silent is True

    def test_create_server_configures_logging(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            create_server({"logs": "silent"}, configure_logging=True, log_level="WARNING")
            assert root.level == logging.WARNING
        finally:
            for handler in root.handlers[:]:
                root.removeHandler(handler)
            for handler in saved_handlers:
                root.addHandler(handler)
            root.setLevel(saved_level)

    def test_hook_without_handlers(self, server):
        with pytest.raises(Exception, match="No hook specified"):
            server.hook("request")
