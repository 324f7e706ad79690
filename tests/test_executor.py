"""Tests for ProviderPool: connecting, dispatch and cleanup."""

import asyncio
import json

import pytest

from conftest import FakeOpener, FunctionTool, StaticResource, make_server, server_config as _config
from relaymcp.mcp.executor import ProviderPool
from relaymcp.mcp.schema import InvocationRequest, ListResourcesRoute, ReadResourceRoute, ToolRoute
from relaymcp.mcp.session import HandshakeError
from relaymcp.servers.base import ServerError


def _failing_tool():
    def fail(args):
        raise ServerError(-32603, "upstream unavailable")

    return FunctionTool("explode", fail)


@pytest.fixture
def opener(echo_tool):
    return FakeOpener({
        "alpha": make_server("alpha", tools=[echo_tool, _failing_tool()],
                             resources=[StaticResource("doc", "docs://{name}")]),
        "beta": make_server("beta", tools=[FunctionTool("echo", lambda a: "beta echo")]),
    })


def run(coro):
    return asyncio.run(coro)


class TestConnect:
    """Tests for connect_to_server / connect_all."""

    def test_connect_builds_catalog(self, opener):
        async def scenario():
            pool = ProviderPool(opener=opener)
            await pool.connect_to_server(_config("alpha"))
            return pool

        pool = run(scenario())

        assert pool.session_names() == ["alpha"]
        assert "alpha__echo" in pool.catalog
        assert "alpha__listResources" in pool.catalog
        assert "alpha__readResource__doc" in pool.catalog

    def test_connect_all_skips_failures(self, opener):
        """One provider failing to connect does not stop the others."""
        async def scenario():
            pool = ProviderPool(opener=opener)
            failures = await pool.connect_all([_config("missing"), _config("alpha"), _config("beta")])
            return pool, failures

        pool, failures = run(scenario())

        assert list(failures) == ["missing"]
        assert "not found" in failures["missing"]
        assert pool.session_names() == ["alpha", "beta"]
        assert not any(c.provider == "missing" for c in pool.catalog.capabilities())

    @pytest.mark.parametrize("tools_result", [
        {"tools": [{"description": "no name", "inputSchema": {"type": "object"}}]},
        {"tools": "not-a-list"},
        ["not", "a", "dict"],
    ])
    def test_malformed_tool_list_skips_provider(self, opener, tools_result):
        """A provider advertising garbage tools is left out; the rest still connect."""
        broken = make_server("broken")
        dispatch = broken._dispatch

        def garbled(method, params):
            if method == "tools/list":
                return tools_result
            return dispatch(method, params)

        broken._dispatch = garbled
        opener.servers["broken"] = broken

        async def scenario():
            pool = ProviderPool(opener=opener)
            failures = await pool.connect_all([_config("broken"), _config("alpha")])
            return pool, failures

        pool, failures = run(scenario())

        assert list(failures) == ["broken"]
        assert "Malformed" in failures["broken"]
        assert pool.session_names() == ["alpha"]
        assert opener.transports[0].close_count == 1

    def test_handshake_failure_closes_transport(self, opener):
        async def scenario():
            pool = ProviderPool(opener=opener)
            original = opener.__call__

            async def failing(config, timeout):
                transport = await original(config, timeout)
                transport.fail_on = "initialize"
                return transport

            pool._opener = failing
            with pytest.raises(HandshakeError):
                await pool.connect_to_server(_config("alpha"))
            return pool

        pool = run(scenario())

        assert not pool.has_active_sessions()
        assert opener.transports[0].close_count == 1

    def test_reconnect_replaces_session(self, opener):
        async def scenario():
            pool = ProviderPool(opener=opener)
            await pool.connect_to_server(_config("alpha"))
            first = pool.get_session("alpha")
            await pool.reconnect("alpha")
            return pool, first

        pool, first = run(scenario())

        assert first.closed
        assert pool.get_session("alpha") is not first
        assert pool.session_names() == ["alpha"]
        assert "alpha__echo" in pool.catalog

    def test_reconnect_unknown(self, opener):
        with pytest.raises(KeyError):
            run(ProviderPool(opener=opener).reconnect("ghost"))


class TestDispatch:
    """Tests for ProviderPool.dispatch."""

    def _dispatch_all(self, opener, requests, servers=("alpha",)):
        async def scenario():
            pool = ProviderPool(opener=opener)
            await pool.connect_all([_config(s) for s in servers])
            return [await pool.dispatch(r) for r in requests]

        return run(scenario())

    def test_tool_call(self, opener):
        (outcome,) = self._dispatch_all(opener, [
            InvocationRequest(qualified_name="alpha__echo", arguments_json='{"text": "hi"}', correlation_id="c1"),
        ])

        assert outcome.route == ToolRoute("alpha", "echo")
        assert outcome.arguments == {"text": "hi"}
        assert outcome.result.correlation_id == "c1"
        assert not outcome.result.is_error
        assert outcome.result.content[0].text == "echo: hi"

    def test_unknown_provider_does_not_block_next(self, opener):
        """A never-connected provider yields an inline error; later requests still run."""
        outcomes = self._dispatch_all(opener, [
            InvocationRequest(qualified_name="ghost__echo", arguments_json="{}", correlation_id="c1"),
            InvocationRequest(qualified_name="alpha__echo", arguments_json='{"text": "after"}', correlation_id="c2"),
        ])

        assert outcomes[0].result.is_error
        assert outcomes[0].result.content[0].text == "Error: Server ghost not found"
        assert outcomes[1].result.content[0].text == "echo: after"

    def test_provider_error_becomes_result(self, opener):
        (outcome,) = self._dispatch_all(opener, [
            InvocationRequest(qualified_name="alpha__explode", arguments_json="{}", correlation_id="c1"),
        ])

        assert outcome.result.is_error
        assert "upstream unavailable" in outcome.result.content[0].text
        assert outcome.result.correlation_id == "c1"

    @pytest.mark.parametrize("arguments,message", [
        ("{not json", "Invalid arguments"),
        ("[1, 2]", "must be an object"),
    ])
    def test_malformed_arguments(self, opener, arguments, message):
        (outcome,) = self._dispatch_all(opener, [
            InvocationRequest(qualified_name="alpha__echo", arguments_json=arguments, correlation_id="c1"),
        ])

        assert outcome.result.is_error
        assert message in outcome.result.content[0].text

    def test_empty_arguments(self, opener):
        (outcome,) = self._dispatch_all(opener, [
            InvocationRequest(qualified_name="alpha__echo", arguments_json="", correlation_id="c1"),
        ])

        assert outcome.arguments == {}
        assert outcome.result.content[0].text == "echo: "

    def test_unqualified_name(self, opener):
        (outcome,) = self._dispatch_all(opener, [InvocationRequest(qualified_name="echo")])

        assert outcome.route is None
        assert outcome.result.is_error

    def test_list_resources_is_local(self, opener):
        """listResources is answered from the catalog, without a provider round trip."""
        async def scenario():
            pool = ProviderPool(opener=opener)
            await pool.connect_to_server(_config("alpha"))
            before = len(opener.transports[0].sent)
            outcome = await pool.dispatch(InvocationRequest(qualified_name="alpha__listResources"))
            return outcome, len(opener.transports[0].sent) - before

        outcome, sent = run(scenario())

        assert outcome.route == ListResourcesRoute("alpha")
        assert sent == 0
        assert json.loads(outcome.result.content[0].text)["resources"][0]["name"] == "doc"

    def test_list_resources_empty_provider(self, opener):
        (outcome,) = self._dispatch_all(
            opener, [InvocationRequest(qualified_name="beta__listResources")], servers=("beta",)
        )

        assert not outcome.result.is_error
        assert json.loads(outcome.result.content[0].text) == {"resources": []}

    def test_read_resource(self, opener):
        (outcome,) = self._dispatch_all(opener, [
            InvocationRequest(qualified_name="alpha__readResource__doc", arguments_json='{"name": "intro"}'),
        ])

        assert outcome.route == ReadResourceRoute("alpha", "doc")
        assert outcome.result.content[0].text == "content of docs://intro"

    def test_read_resource_error_becomes_result(self, opener):
        (outcome,) = self._dispatch_all(opener, [
            InvocationRequest(qualified_name="alpha__readResource__doc", arguments_json="{}"),
        ])

        assert outcome.result.is_error
        assert "Missing parameter" in outcome.result.content[0].text


class TestCleanup:
    def test_every_session_closed_exactly_once(self, opener):
        async def scenario():
            pool = ProviderPool(opener=opener)
            await pool.connect_all([_config("alpha"), _config("beta")])
            await pool.cleanup()
            await pool.cleanup()
            return pool

        pool = run(scenario())

        assert [t.close_count for t in opener.transports] == [1, 1]
        assert not pool.has_active_sessions()
        assert len(pool.catalog) == 0

    def test_disconnect_removes_capabilities(self, opener):
        async def scenario():
            pool = ProviderPool(opener=opener)
            await pool.connect_all([_config("alpha"), _config("beta")])
            await pool.disconnect("alpha")
            return pool

        pool = run(scenario())

        assert pool.session_names() == ["beta"]
        assert "alpha__echo" not in pool.catalog
        assert "beta__echo" in pool.catalog
