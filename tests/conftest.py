"""Shared test doubles: an in-memory transport backed by a demo server."""

import asyncio
from typing import Any, Callable, Dict, List, Optional

import pytest

from relaymcp.mcp.transport import Transport, TransportError
from relaymcp.servers.base import ResourceHandler, StdioToolServer, ToolHandler, text_content
from relaymcp.validation.config import ProviderConfig


class ServerTransport(Transport):
    """
    Transport wired straight into a StdioToolServer's message handler.

    ``before_reply`` messages (notifications, server requests) are
    delivered ahead of every response.
    """

    def __init__(self, server: StdioToolServer, before_reply: Optional[List[Dict[str, Any]]] = None):
        self.server = server
        self.before_reply = before_reply or []
        self.sent: List[Dict[str, Any]] = []
        self.close_count = 0
        self.fail_on: Optional[str] = None
        self._queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        self._open = False

    async def open(self) -> None:
        self._open = True

    async def send(self, message: Dict[str, Any]) -> None:
        if not self._open:
            raise TransportError("Transport not running")
        self.sent.append(message)
        if self.fail_on and message.get("method") == self.fail_on:
            raise TransportError(f"connection lost during {self.fail_on}")
        if "method" not in message:
            return
        for extra in self.before_reply:
            self._queue.put_nowait(extra)
        response = self.server.handle_message(message)
        if response is not None:
            self._queue.put_nowait(response)

    async def receive(self) -> Dict[str, Any]:
        return await self._queue.get()

    async def close(self) -> None:
        self.close_count += 1
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def methods(self) -> List[str]:
        return [m["method"] for m in self.sent if "method" in m]


class FunctionTool(ToolHandler):
    """Tool whose behaviour is a plain callable."""

    def __init__(self, name: str, fn: Callable[[Dict[str, Any]], Any], parameters=None, required=None):
        self.name = name
        self.description = f"{name} tool"
        self.parameters = parameters or {}
        self.required = required or []
        self._fn = fn
        self.calls: List[Dict[str, Any]] = []

    def handle(self, arguments):
        self.calls.append(arguments)
        result = self._fn(arguments)
        if isinstance(result, str):
            return [text_content(result)]
        return result


class StaticResource(ResourceHandler):
    def __init__(self, name: str, uri_template: str, parameters=None):
        self.name = name
        self.uri_template = uri_template
        self.description = f"{name} resource"
        self.parameters = parameters or {}
        self.reads: List[str] = []

    def read(self, uri, params):
        self.reads.append(uri)
        return [{"uri": uri, "mimeType": "text/plain", "text": f"content of {uri}"}]


class FakeOpener:
    """Opens in-memory transports for named demo servers."""

    def __init__(self, servers: Dict[str, StdioToolServer]):
        self.servers = servers
        self.transports: List[ServerTransport] = []

    async def __call__(self, config: ProviderConfig, connect_timeout: float) -> ServerTransport:
        if config.name not in self.servers:
            raise TransportError(f"MCP server command not found: {config.command}")
        transport = ServerTransport(self.servers[config.name])
        await transport.open()
        self.transports.append(transport)
        return transport


def server_config(name: str) -> ProviderConfig:
    return ProviderConfig(name=name, type="command", command=f"{name}-server")


def make_server(name: str = "demo", tools=(), resources=()) -> StdioToolServer:
    server = StdioToolServer(name)
    for tool in tools:
        server.register(tool)
    for resource in resources:
        server.register_resource(resource)
    return server


@pytest.fixture
def echo_tool():
    return FunctionTool(
        "echo",
        lambda args: f"echo: {args.get('text', '')}",
        parameters={"text": {"type": "string"}},
        required=["text"],
    )
