"""MCP server communication over stdio subprocesses and SSE push streams."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin

import httpx

from relaymcp.validation.config import PUSH_STREAM, SUBPROCESS, ProviderConfig

logger = logging.getLogger(__name__)

# Base64 images travel as single JSON lines.
STDIO_LINE_LIMIT = 32 * 1024 * 1024


class TransportError(ConnectionError):
    """Raised when MCP transport communication fails."""


def parse_launch_command(command: str) -> Tuple[str, List[str]]:
    """
    Split a launch command into program and arguments.

    A leading ``~/`` in any argument is expanded to the home directory.
    """
    try:
        tokens = shlex.split(command or "")
    except ValueError as exc:
        raise TransportError(f"Invalid shell command: {command!r} ({exc})")
    if not tokens:
        raise TransportError("Invalid shell command: no program given")

    program, *args = tokens
    home = str(Path.home())
    args = [home + arg[1:] if arg.startswith("~/") else arg for arg in args]
    return program, args


def inherited_environment(extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """The parent's environment with undefined values dropped, plus ``extra``."""
    env = {key: value for key, value in os.environ.items() if value is not None}
    env.update(extra or {})
    return env


class Transport(ABC):
    """Bidirectional JSON-RPC message channel to one provider."""

    @abstractmethod
    async def open(self) -> None:
        """Establish the channel."""

    @abstractmethod
    async def send(self, message: Dict[str, Any]) -> None:
        """Send one JSON-RPC message."""

    @abstractmethod
    async def receive(self) -> Dict[str, Any]:
        """Wait for the next JSON-RPC message from the provider."""

    @abstractmethod
    async def close(self) -> None:
        """Release the channel. Safe to call more than once."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...


class StdioTransport(Transport):
    """
    Communicate with an MCP server over stdin/stdout (newline-delimited JSON).

    The child's stderr is drained into the debug log.
    """

    def __init__(
        self,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
    ):
        self.command = command
        self.args = args or []
        self.env = env
        self._process: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None

    @classmethod
    def from_command_line(cls, command_line: str, env: Optional[Dict[str, str]] = None) -> "StdioTransport":
        program, args = parse_launch_command(command_line)
        return cls(program, args, inherited_environment(env))

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def open(self) -> None:
        """Spawn the MCP server subprocess."""
        if self.is_open:
            return

        logger.info("Starting stdio transport: %s", " ".join([self.command] + self.args))
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                limit=STDIO_LINE_LIMIT,
            )
        except FileNotFoundError:
            raise TransportError(f"MCP server command not found: {self.command}")
        except OSError as exc:
            raise TransportError(f"Failed to start {self.command}: {exc}")

        self._stderr_task = asyncio.create_task(self._drain_stderr(self._process))

    async def close(self) -> None:
        """Terminate the MCP server subprocess."""
        process, self._process = self._process, None
        if process is None:
            return

        if process.stdin and not process.stdin.is_closing():
            process.stdin.close()
        if process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=5)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()

        if self._stderr_task is not None:
            self._stderr_task.cancel()
            self._stderr_task = None
        logger.info("Stdio transport stopped: %s", self.command)

    @property
    def is_open(self) -> bool:
        return self._process is not None and self._process.returncode is None

    # ── Messages ──────────────────────────────────────────────────────────

    async def send(self, message: Dict[str, Any]) -> None:
        if not self.is_open:
            raise TransportError("Transport not running")

        line = json.dumps(message) + "\n"
        try:
            self._process.stdin.write(line.encode())
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise TransportError(f"MCP transport error: {exc}")

    async def receive(self) -> Dict[str, Any]:
        if self._process is None:
            raise TransportError("Transport not running")

        while True:
            try:
                raw = await self._process.stdout.readline()
            except (ValueError, asyncio.LimitOverrunError) as exc:
                raise TransportError(f"MCP server sent an oversized message: {exc}")

            if not raw:
                code = await self._process.wait()
                raise TransportError(f"MCP server closed connection (exit code {code})")

            text = raw.decode(errors="replace").strip()
            if not text:
                continue
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                logger.debug("Ignoring non-JSON output from %s: %s", self.command, text[:200])

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            logger.debug("[%s] %s", self.command, line.decode(errors="replace").rstrip())


# ── SSE ──────────────────────────────────────────────────────────────────


@dataclass
class SSEEvent:
    event: Optional[str]
    data: str


class SSEEventParser:
    """Incremental parser for a ``text/event-stream`` body, fed line by line."""

    def __init__(self):
        self._event: Optional[str] = None
        self._data: List[str] = []

    def feed(self, line: str) -> Optional[SSEEvent]:
        """Consume one line; return an event when a blank line completes it."""
        line = line.rstrip("\r\n")
        if not line:
            if not self._data:
                self._event = None
                return None
            event = SSEEvent(self._event, "\n".join(self._data))
            self._event, self._data = None, []
            return event

        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value.strip()
        elif field == "data":
            self._data.append(value)
        return None


class SSETransport(Transport):
    """
    Transport using Server-Sent Events over HTTP.

    A long-lived GET receives messages; outgoing messages are POSTed to the
    endpoint the server announces in its first ``endpoint`` event.
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        connect_timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.headers = headers or {}
        self.connect_timeout = connect_timeout
        self.message_endpoint: Optional[str] = None
        self._client = client
        self._owns_client = client is None
        self._response: Optional[httpx.Response] = None
        self._reader: Optional[asyncio.Task] = None
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._endpoint_ready = asyncio.Event()

    async def open(self) -> None:
        if self.is_open:
            return

        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.connect_timeout, read=None))

        logger.info("Opening SSE stream: %s", self.url)
        request = self._client.build_request(
            "GET", self.url, headers={"Accept": "text/event-stream", **self.headers}
        )
        try:
            self._response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            await self.close()
            raise TransportError(f"Failed to connect to {self.url}: {exc}")

        if self._response.status_code >= 400:
            status = self._response.status_code
            await self.close()
            raise TransportError(f"SSE endpoint {self.url} returned HTTP {status}")

        self._reader = asyncio.create_task(self._read_events(self._response))
        try:
            await asyncio.wait_for(self._endpoint_ready.wait(), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise TransportError("Server did not provide message endpoint")

        if self.message_endpoint is None:
            # Stream ended before announcing the endpoint; surface why.
            failure = self._queue.get_nowait() if not self._queue.empty() else None
            await self.close()
            raise TransportError(str(failure or "SSE stream closed before endpoint event"))

    async def _read_events(self, response: httpx.Response) -> None:
        parser = SSEEventParser()
        try:
            async for line in response.aiter_lines():
                event = parser.feed(line)
                if event is not None:
                    self._handle_event(event)
            failure: Exception = TransportError("SSE connection closed by server")
        except httpx.HTTPError as exc:
            failure = TransportError(f"SSE stream error: {exc}")
        self._queue.put_nowait(failure)
        self._endpoint_ready.set()

    def _handle_event(self, event: SSEEvent) -> None:
        if event.event == "endpoint":
            self.message_endpoint = urljoin(self.url, event.data.strip())
            logger.debug("SSE message endpoint: %s", self.message_endpoint)
            self._endpoint_ready.set()
        elif event.event in (None, "message"):
            try:
                self._queue.put_nowait(json.loads(event.data))
            except json.JSONDecodeError:
                logger.warning("Ignoring malformed SSE message: %s", event.data[:200])

    async def send(self, message: Dict[str, Any]) -> None:
        if not self.is_open or self.message_endpoint is None:
            raise TransportError("Transport not connected")
        try:
            response = await self._client.post(self.message_endpoint, json=message, headers=self.headers)
        except httpx.HTTPError as exc:
            raise TransportError(f"Failed to POST message: {exc}")
        if response.status_code >= 400:
            raise TransportError(
                f"Message endpoint returned HTTP {response.status_code}: {response.text[:200]}"
            )

    async def receive(self) -> Dict[str, Any]:
        item = await self._queue.get()
        if isinstance(item, Exception):
            # Keep the failure visible to later receivers too.
            self._queue.put_nowait(item)
            raise item
        return item

    async def close(self) -> None:
        reader, self._reader = self._reader, None
        if reader is not None:
            reader.cancel()
        response, self._response = self._response, None
        if response is not None:
            await response.aclose()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @property
    def is_open(self) -> bool:
        return self._response is not None and self._reader is not None and not self._reader.done()


def build_transport(config: ProviderConfig, connect_timeout: float = 30.0) -> Transport:
    """Create an unopened transport for a provider config."""
    if config.kind == SUBPROCESS:
        return StdioTransport.from_command_line(config.command or "", config.env)
    if config.kind == PUSH_STREAM:
        return SSETransport(config.url or "", connect_timeout=connect_timeout)
    raise TransportError(f"Unsupported transport kind: {config.kind}")


async def open_transport(config: ProviderConfig, connect_timeout: float = 30.0) -> Transport:
    """Build and open the transport for ``config``."""
    transport = build_transport(config, connect_timeout)
    await transport.open()
    return transport
