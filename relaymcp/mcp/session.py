"""
Provider session: the MCP handshake and typed requests over one transport.

A session is created by ``ProviderSession.connect()`` which performs the
``initialize`` / ``notifications/initialized`` exchange, then exposes
``list_tools``, ``list_resources``, ``call_tool``, ``read_resource`` and
``close``. Requests are serialized; one request is in flight at a time.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from relaymcp import __version__
from relaymcp.mcp import uritemplate
from relaymcp.mcp.schema import ContentPart, InvocationResult, ResourceDescriptor, ToolDescriptor
from relaymcp.mcp.transport import Transport, TransportError

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
METHOD_NOT_FOUND = -32601

# Raised while turning a malformed provider payload into schema objects
MALFORMED_PAYLOAD = (ValidationError, AttributeError, KeyError, TypeError)

CLIENT_CAPABILITIES = {"prompts": {}, "resources": {}, "tools": {}}


class SessionError(Exception):
    """Base class for provider session failures."""


class HandshakeError(SessionError):
    """Raised when the initialize exchange fails."""


class InvocationError(SessionError):
    """Raised when a tool call fails on the provider or in transit."""


class ResourceError(SessionError):
    """Raised when a resource cannot be read."""


class RPCError(SessionError):
    """JSON-RPC error returned by the provider."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"MCP error {code}: {message}")


class ProviderSession:
    """One live, initialized connection to a tool provider."""

    def __init__(self, name: str, transport: Transport, request_timeout: Optional[float] = 60.0):
        self.name = name
        self.transport = transport
        self.request_timeout = request_timeout
        self.server_info: Dict[str, Any] = {}
        self.server_capabilities: Dict[str, Any] = {}
        self.protocol_version: Optional[str] = None
        self._request_id = 0
        self._lock = asyncio.Lock()
        self._resources: Dict[str, ResourceDescriptor] = {}
        self._closed = False

    @classmethod
    async def connect(
        cls,
        name: str,
        transport: Transport,
        request_timeout: Optional[float] = 60.0,
    ) -> "ProviderSession":
        """Run the handshake on an open transport and return the session."""
        session = cls(name, transport, request_timeout)
        try:
            await session._initialize()
        except (SessionError, TransportError, asyncio.TimeoutError) as exc:
            raise HandshakeError(f"Handshake with '{name}' failed: {exc}") from exc
        return session

    async def _initialize(self) -> None:
        result = await self._call("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": CLIENT_CAPABILITIES,
            "clientInfo": {"name": "relaymcp", "version": __version__},
        })
        if not isinstance(result, dict) or "protocolVersion" not in result:
            raise HandshakeError("Server did not return protocolVersion in initialize response")

        self.protocol_version = result["protocolVersion"]
        self.server_info = result.get("serverInfo") or {}
        self.server_capabilities = result.get("capabilities") or {}
        await self._notify("notifications/initialized", {})
        logger.info(
            "Initialized '%s' (%s, protocol %s)",
            self.name,
            self.server_info.get("name", "unknown server"),
            self.protocol_version,
        )

    # ── JSON-RPC ──────────────────────────────────────────────────────────

    async def _call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Send a request and wait for its result."""
        if self._closed:
            raise TransportError(f"Session '{self.name}' is closed")

        async with self._lock:
            self._request_id += 1
            request_id = self._request_id
            request: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
            if params is not None:
                request["params"] = params

            await self.transport.send(request)
            if self.request_timeout:
                response = await asyncio.wait_for(
                    self._wait_for_response(request_id), timeout=self.request_timeout
                )
            else:
                response = await self._wait_for_response(request_id)

        if "error" in response:
            err = response["error"]
            if isinstance(err, dict):
                raise RPCError(err.get("code", -1), err.get("message", "Unknown error"), err.get("data"))
            raise RPCError(-1, str(err))
        return response.get("result")

    async def _notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self.transport.send(message)

    async def _wait_for_response(self, request_id: int) -> Dict[str, Any]:
        while True:
            message = await self.transport.receive()
            has_method = "method" in message
            has_id = "id" in message

            if has_method and has_id:
                await self._answer_server_request(message)
            elif has_method:
                logger.debug("Notification from '%s': %s", self.name, message["method"])
            elif has_id and message["id"] == request_id:
                return message
            else:
                logger.debug("Discarding stale response from '%s': id=%s", self.name, message.get("id"))

    async def _answer_server_request(self, message: Dict[str, Any]) -> None:
        if message["method"] == "ping":
            reply: Dict[str, Any] = {"jsonrpc": "2.0", "id": message["id"], "result": {}}
        else:
            reply = {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": METHOD_NOT_FOUND, "message": f"Method not found: {message['method']}"},
            }
        await self.transport.send(reply)

    async def _list(self, method: str, key: str) -> List[Dict[str, Any]]:
        """Call a paginated ``*/list`` method; method-not-found yields []."""
        items: List[Dict[str, Any]] = []
        cursor = None
        while True:
            try:
                result = await self._call(method, {"cursor": cursor} if cursor else {})
            except RPCError as exc:
                if exc.code == METHOD_NOT_FOUND:
                    return items
                raise
            result = result or {}
            if not isinstance(result, dict) or not isinstance(result.get(key, []), list):
                raise SessionError(f"Malformed {method} result from '{self.name}'")
            items.extend(result.get(key, []))
            cursor = result.get("nextCursor")
            if not cursor:
                return items

    # ── Capabilities ──────────────────────────────────────────────────────

    async def list_tools(self) -> List[ToolDescriptor]:
        """Fetch the tool list; empty when the provider offers none."""
        if "tools" not in self.server_capabilities:
            return []
        raw = await self._list("tools/list", "tools")
        try:
            return [ToolDescriptor.from_wire(item) for item in raw]
        except MALFORMED_PAYLOAD as exc:
            raise SessionError(f"Malformed tool list from '{self.name}': {exc!r}") from exc

    async def list_resources(self) -> List[ResourceDescriptor]:
        """Fetch concrete resources and resource templates; empty when none."""
        if "resources" not in self.server_capabilities:
            self._resources = {}
            return []

        raw = await self._list("resources/list", "resources")
        raw += await self._list("resources/templates/list", "resourceTemplates")
        try:
            descriptors = [ResourceDescriptor.from_wire(item) for item in raw]
        except MALFORMED_PAYLOAD as exc:
            raise SessionError(f"Malformed resource list from '{self.name}': {exc!r}") from exc
        self._resources = {d.name: d for d in descriptors}
        return descriptors

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> InvocationResult:
        """Invoke a tool. Any failure is raised as ``InvocationError``."""
        try:
            result = await self._call("tools/call", {"name": name, "arguments": arguments or {}})
        except asyncio.TimeoutError:
            raise InvocationError(f"Tool '{name}' on '{self.name}' timed out")
        except (RPCError, TransportError) as exc:
            raise InvocationError(str(exc)) from exc

        result = result or {}
        try:
            content = [ContentPart.from_tool_content(part) for part in result.get("content", [])]
        except MALFORMED_PAYLOAD as exc:
            raise InvocationError(f"Malformed result from tool '{name}' on '{self.name}': {exc!r}") from exc
        if result.get("isError"):
            message = "\n".join(p.text for p in content if p.text) or f"Tool '{name}' failed"
            raise InvocationError(message)
        return InvocationResult(content=content)

    async def read_resource(self, name: str, params: Optional[Dict[str, Any]] = None) -> InvocationResult:
        """Read a resource by name, expanding its URI template with ``params``."""
        uri = await self._resolve_uri(name, params or {})
        try:
            result = await self._call("resources/read", {"uri": uri})
        except asyncio.TimeoutError:
            raise ResourceError(f"Reading {uri} from '{self.name}' timed out")
        except (RPCError, TransportError) as exc:
            raise ResourceError(str(exc)) from exc

        try:
            contents = (result or {}).get("contents", [])
            return InvocationResult(content=[ContentPart.from_resource_content(c) for c in contents])
        except MALFORMED_PAYLOAD as exc:
            raise ResourceError(f"Malformed contents for {uri} from '{self.name}': {exc!r}") from exc

    async def _resolve_uri(self, name: str, params: Dict[str, Any]) -> str:
        descriptor = self._resources.get(name)
        if descriptor is None:
            try:
                await self.list_resources()
            except (SessionError, TransportError, asyncio.TimeoutError) as exc:
                raise ResourceError(f"Could not list resources on '{self.name}': {exc}") from exc
            descriptor = self._resources.get(name)

        if descriptor is None:
            if "://" in name:
                return name
            raise ResourceError(f"Resource '{name}' not found on '{self.name}'")

        if descriptor.uri:
            return descriptor.uri
        try:
            return uritemplate.expand(descriptor.uri_template or "", params)
        except KeyError as exc:
            raise ResourceError(f"Missing parameter {exc} for resource '{name}'")

    # ── Cleanup ───────────────────────────────────────────────────────────

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        """Release the transport. Idempotent."""
        if self._closed:
            return
        self._closed = True
        await self.transport.close()
