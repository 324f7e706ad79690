"""
MCP tool server base class.

A tool server is a standalone process that:
1. Reads JSON-RPC messages from stdin, one per line
2. Answers the MCP handshake and the tools/resources methods
3. Writes JSON-RPC responses to stdout

To create a tool server:

    from relaymcp.servers.base import StdioToolServer, ToolHandler, text_content

    class Echo(ToolHandler):
        name = "echo"
        description = "Echo the input back"
        parameters = {"text": {"type": "string", "description": "The input"}}
        required = ["text"]

        def handle(self, arguments):
            return [text_content(arguments["text"])]

    if __name__ == "__main__":
        server = StdioToolServer("echo-server")
        server.register(Echo())
        server.run()
"""

from __future__ import annotations

import base64
import json
import logging
import sys
from abc import ABC, abstractmethod
from typing import IO, Any, Dict, List, Optional

from relaymcp.mcp import uritemplate

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"

PARSE_ERROR = -32700
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class ServerError(Exception):
    """An error reported to the client as a JSON-RPC error object."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def text_content(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}


def image_content(data: bytes, mime_type: str = "image/png") -> Dict[str, Any]:
    return {"type": "image", "data": base64.b64encode(data).decode("ascii"), "mimeType": mime_type}


class ToolHandler(ABC):
    """
    Base class for a tool implementation.

    Subclasses define what a tool does. The server handles transport.
    """

    # Subclasses must set these
    name: str = ""
    description: str = ""
    parameters: Dict[str, dict] = {}
    required: List[str] = []

    @abstractmethod
    def handle(self, arguments: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Execute the tool.

        Args:
            arguments: Dict of parameter name -> value

        Returns:
            MCP content parts (text or image dicts)

        Raises:
            ServerError: For invalid arguments.
        """
        ...

    def get_schema(self) -> Dict[str, Any]:
        """Return the tool descriptor for ``tools/list``."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": {
                "type": "object",
                "properties": self.parameters,
                "required": list(self.required),
            },
        }


class ResourceHandler(ABC):
    """Base class for a templated resource."""

    name: str = ""
    description: str = ""
    uri_template: str = ""
    mime_type: Optional[str] = None
    parameters: Dict[str, dict] = {}

    @abstractmethod
    def read(self, uri: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        """Return ``resources/read`` contents for ``uri``."""
        ...

    def matches(self, uri: str) -> Optional[Dict[str, str]]:
        params = uritemplate.match(self.uri_template, uri)
        if params or uri == self.uri_template:
            return params
        return None

    def get_template(self) -> Dict[str, Any]:
        template: Dict[str, Any] = {
            "name": self.name,
            "uriTemplate": self.uri_template,
            "description": self.description,
        }
        if self.mime_type:
            template["mimeType"] = self.mime_type
        if self.parameters:
            template["parameters"] = self.parameters
        return template


class StdioToolServer:
    """
    JSON-RPC MCP server that communicates via stdin/stdout.

    Supported methods: initialize, ping, tools/list, tools/call,
    resources/list, resources/templates/list, resources/read.
    Notifications are accepted and ignored.
    """

    def __init__(self, name: str, version: str = "1.0.0"):
        self.name = name
        self.version = version
        self._handlers: Dict[str, ToolHandler] = {}
        self._resources: Dict[str, ResourceHandler] = {}

    def register(self, handler: ToolHandler) -> None:
        """Register a tool handler."""
        if not handler.name:
            raise ValueError(f"ToolHandler {handler.__class__.__name__} has no name")
        self._handlers[handler.name] = handler
        logger.info("Registered tool: %s", handler.name)

    def register_resource(self, handler: ResourceHandler) -> None:
        if not handler.name:
            raise ValueError(f"ResourceHandler {handler.__class__.__name__} has no name")
        self._resources[handler.name] = handler
        logger.info("Registered resource: %s", handler.name)

    def run(self, stdin: Optional[IO[str]] = None, stdout: Optional[IO[str]] = None) -> None:
        """
        Main loop: read requests, dispatch, write responses.

        This blocks until stdin is closed (parent process terminates).
        """
        stdin = stdin or sys.stdin
        stdout = stdout or sys.stdout
        logger.info("%s starting with tools: %s", self.name, list(self._handlers))

        for line in stdin:
            line = line.strip()
            if not line:
                continue

            try:
                message = json.loads(line)
            except json.JSONDecodeError as e:
                self._write(stdout, self._error(None, PARSE_ERROR, f"Parse error: {e}"))
                continue

            response = self.handle_message(message)
            if response is not None:
                self._write(stdout, response)

    def handle_message(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Answer one JSON-RPC message; notifications yield None."""
        if "id" not in message:
            logger.debug("Notification: %s", message.get("method"))
            return None

        request_id = message["id"]
        try:
            result = self._dispatch(message.get("method", ""), message.get("params") or {})
        except ServerError as e:
            return self._error(request_id, e.code, e.message)
        except Exception as e:
            logger.exception("Request %s failed", message.get("method"))
            return self._error(request_id, INTERNAL_ERROR, str(e))
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    def _dispatch(self, method: str, params: Dict[str, Any]) -> Any:
        """Route a method call to the appropriate handler."""

        if method == "initialize":
            capabilities: Dict[str, Any] = {"tools": {}}
            if self._resources:
                capabilities["resources"] = {}
            return {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": capabilities,
                "serverInfo": {"name": self.name, "version": self.version},
            }

        if method == "ping":
            return {}

        if method == "tools/list":
            return {"tools": [h.get_schema() for h in self._handlers.values()]}

        if method == "tools/call":
            tool_name = params.get("name", "")
            handler = self._handlers.get(tool_name)
            if not handler:
                raise ServerError(
                    INVALID_PARAMS,
                    f"Unknown tool: '{tool_name}'. Available: {list(self._handlers)}",
                )
            return {"content": handler.handle(params.get("arguments") or {})}

        if method == "resources/list":
            return {"resources": []}

        if method == "resources/templates/list":
            return {"resourceTemplates": [r.get_template() for r in self._resources.values()]}

        if method == "resources/read":
            uri = params.get("uri", "")
            for resource in self._resources.values():
                matched = resource.matches(uri)
                if matched is not None:
                    return {"contents": resource.read(uri, matched)}
            raise ServerError(INVALID_PARAMS, f"Resource {uri} not found")

        raise ServerError(METHOD_NOT_FOUND, f"Method not found: {method}")

    @staticmethod
    def _error(request_id: Any, code: int, message: str) -> Dict[str, Any]:
        return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}

    @staticmethod
    def _write(stdout: IO[str], message: Dict[str, Any]) -> None:
        stdout.write(json.dumps(message) + "\n")
        stdout.flush()
