"""Tests for transports, launch-command parsing and URI templates."""

import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest

from relaymcp.mcp import uritemplate
from relaymcp.mcp.transport import (
    SSEEventParser,
    SSETransport,
    StdioTransport,
    TransportError,
    build_transport,
    inherited_environment,
    parse_launch_command,
)
from relaymcp.validation.config import ProviderConfig

ECHO_SERVER = (
    "import sys\n"
    "print('booting', flush=True)\n"
    "for line in sys.stdin:\n"
    "    sys.stdout.write(line)\n"
    "    sys.stdout.flush()\n"
)


class TestLaunchCommand:
    """Tests for parse_launch_command."""

    def test_splits_program_and_args(self):
        program, args = parse_launch_command("node build/index.js --port 3001")

        assert program == "node"
        assert args == ["build/index.js", "--port", "3001"]

    def test_expands_home_prefix(self):
        """A leading ~/ in any argument becomes the home directory."""
        program, args = parse_launch_command("node ~/servers/health.js plain~/x")

        assert program == "node"
        assert args[0] == str(Path.home()) + "/servers/health.js"
        assert args[1] == "plain~/x"

    def test_quoted_arguments(self):
        _, args = parse_launch_command('python -c "print(1)"')
        assert args == ["-c", "print(1)"]

    @pytest.mark.parametrize("command", ["", "   "])
    def test_no_program_fails_fast(self, command):
        """A command without a program token is rejected before spawning."""
        with pytest.raises(TransportError, match="no program"):
            parse_launch_command(command)

    def test_inherited_environment(self, monkeypatch):
        monkeypatch.setenv("RELAYMCP_TEST_VAR", "1")
        env = inherited_environment({"EXTRA": "yes"})

        assert env["RELAYMCP_TEST_VAR"] == "1"
        assert env["EXTRA"] == "yes"

    def test_build_transport_kinds(self):
        stdio = build_transport(ProviderConfig(name="a", type="command", command="python -m x"))
        sse = build_transport(ProviderConfig(name="b", type="sse", url="http://localhost:3001/sse"))

        assert isinstance(stdio, StdioTransport)
        assert stdio.command == "python"
        assert isinstance(sse, SSETransport)
        assert sse.url == "http://localhost:3001/sse"


class TestStdioTransport:
    """Tests for StdioTransport against a tiny echo process."""

    def test_round_trip_skips_non_json(self):
        async def scenario():
            transport = StdioTransport(sys.executable, ["-c", ECHO_SERVER])
            await transport.open()
            try:
                assert transport.is_open
                await transport.send({"jsonrpc": "2.0", "id": 1, "method": "ping"})
                return await transport.receive()
            finally:
                await transport.close()

        message = asyncio.run(scenario())
        assert message == {"jsonrpc": "2.0", "id": 1, "method": "ping"}

    def test_close_is_idempotent(self):
        async def scenario():
            transport = StdioTransport(sys.executable, ["-c", ECHO_SERVER])
            await transport.open()
            await transport.close()
            await transport.close()
            return transport.is_open

        assert asyncio.run(scenario()) is False

    def test_missing_program(self):
        async def scenario():
            await StdioTransport("relaymcp-no-such-program-xyz").open()

        with pytest.raises(TransportError, match="not found"):
            asyncio.run(scenario())

    def test_child_exit_is_transport_error(self):
        async def scenario():
            transport = StdioTransport(sys.executable, ["-c", "pass"])
            await transport.open()
            try:
                await transport.receive()
            finally:
                await transport.close()

        with pytest.raises(TransportError, match="closed connection"):
            asyncio.run(scenario())

    def test_send_when_not_open(self):
        with pytest.raises(TransportError):
            asyncio.run(StdioTransport("python").send({}))


class TestSSEEventParser:
    """Tests for the text/event-stream line parser."""

    def test_endpoint_event(self):
        parser = SSEEventParser()

        assert parser.feed("event: endpoint") is None
        assert parser.feed("data: /messages?sessionId=abc") is None
        event = parser.feed("")

        assert event.event == "endpoint"
        assert event.data == "/messages?sessionId=abc"

    def test_multiline_data_and_comments(self):
        parser = SSEEventParser()

        parser.feed(": keep-alive")
        parser.feed("data: line one")
        parser.feed("data: line two")
        event = parser.feed("\r\n")

        assert event.event is None
        assert event.data == "line one\nline two"

    def test_blank_lines_without_data(self):
        parser = SSEEventParser()
        assert parser.feed("") is None
        assert parser.feed("event: ping") is None
        assert parser.feed("") is None


class TestSSETransport:
    """Tests for SSETransport with an in-memory HTTP server."""

    def _client(self, posted, release):
        async def stream():
            yield b"event: endpoint\ndata: /messages?sessionId=abc\n\n"
            yield b'event: message\ndata: {"jsonrpc": "2.0", "id": 1, "result": {}}\n\n'
            await release.wait()

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=stream())
            posted.append((str(request.url), json.loads(request.content)))
            return httpx.Response(202, text="Accepted")

        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    def test_endpoint_send_and_receive(self):
        posted = []

        async def scenario():
            release = asyncio.Event()
            client = self._client(posted, release)
            transport = SSETransport("http://localhost:3001/sse", client=client)
            await transport.open()
            try:
                await transport.send({"jsonrpc": "2.0", "id": 1, "method": "ping"})
                message = await transport.receive()
                return transport.message_endpoint, message
            finally:
                release.set()
                await transport.close()
                await client.aclose()

        endpoint, message = asyncio.run(scenario())

        assert endpoint == "http://localhost:3001/messages?sessionId=abc"
        assert message == {"jsonrpc": "2.0", "id": 1, "result": {}}
        assert posted == [(endpoint, {"jsonrpc": "2.0", "id": 1, "method": "ping"})]

    def test_http_error_on_open(self):
        async def scenario():
            client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(404)))
            try:
                await SSETransport("http://localhost:3001/sse", client=client).open()
            finally:
                await client.aclose()

        with pytest.raises(TransportError, match="404"):
            asyncio.run(scenario())

    def test_stream_without_endpoint(self):
        async def scenario():
            client = httpx.AsyncClient(transport=httpx.MockTransport(
                lambda r: httpx.Response(200, content=b": nothing here\n\n")
            ))
            try:
                await SSETransport("http://localhost:3001/sse", client=client, connect_timeout=2).open()
            finally:
                await client.aclose()

        with pytest.raises(TransportError):
            asyncio.run(scenario())


class TestUriTemplate:
    """Tests for resource URI templates."""

    TEMPLATE = "health://image/{deviceId}/{date?}"

    def test_variables(self):
        assert uritemplate.template_variables(self.TEMPLATE) == [("deviceId", False), ("date", True)]

    def test_expand(self):
        assert uritemplate.expand(self.TEMPLATE, {"deviceId": "9F2B", "date": "20250418"}) == \
            "health://image/9F2B/20250418"

    def test_expand_drops_missing_optional(self):
        assert uritemplate.expand(self.TEMPLATE, {"deviceId": "9F2B"}) == "health://image/9F2B"

    def test_expand_quotes_values(self):
        assert uritemplate.expand(self.TEMPLATE, {"deviceId": "a/b c"}) == "health://image/a%2Fb%20c"

    def test_expand_missing_required(self):
        with pytest.raises(KeyError):
            uritemplate.expand(self.TEMPLATE, {"date": "20250418"})

    def test_match(self):
        assert uritemplate.match(self.TEMPLATE, "health://image/9F2B/20250418") == \
            {"deviceId": "9F2B", "date": "20250418"}
        assert uritemplate.match(self.TEMPLATE, "health://image/a%2Fb") == {"deviceId": "a/b"}
        assert uritemplate.match(self.TEMPLATE, "other://x") == {}
