"""Provider pool: owns live sessions and the catalog, and dispatches routed calls."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from relaymcp.mcp.registry import CapabilityCatalog, parse_qualified_name
from relaymcp.mcp.schema import (
    InvocationRequest,
    InvocationResult,
    ListResourcesRoute,
    ReadResourceRoute,
    RoutedCall,
    ToolRoute,
)
from relaymcp.mcp.session import (
    HandshakeError,
    InvocationError,
    ProviderSession,
    ResourceError,
    SessionError,
)
from relaymcp.mcp.transport import Transport, TransportError, open_transport
from relaymcp.validation.config import ProviderConfig

logger = logging.getLogger(__name__)

TransportOpener = Callable[[ProviderConfig, float], Awaitable[Transport]]


@dataclass
class DispatchOutcome:
    """What happened to one invocation request."""

    request: InvocationRequest
    result: InvocationResult
    route: Optional[RoutedCall] = None
    arguments: Dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0


class ProviderPool:
    """
    Session registry plus capability catalog.

    The registry is mutated only by ``connect_to_server``, ``disconnect``
    and ``cleanup``; ``dispatch`` reads it. There is at most one session
    per provider name.
    """

    def __init__(
        self,
        request_timeout: Optional[float] = 60.0,
        connect_timeout: float = 30.0,
        opener: TransportOpener = open_transport,
    ):
        self.request_timeout = request_timeout
        self.connect_timeout = connect_timeout
        self.catalog = CapabilityCatalog()
        self._opener = opener
        self._sessions: Dict[str, ProviderSession] = {}
        self._configs: Dict[str, ProviderConfig] = {}

    # ── Connections ───────────────────────────────────────────────────────

    async def connect_to_server(self, server: ProviderConfig) -> ProviderSession:
        """
        Open, handshake and catalog one provider.

        Raises ``TransportError`` or ``HandshakeError``; on failure the
        provider is simply absent from the registry and catalog.
        """
        if server.name in self._sessions:
            await self.disconnect(server.name)
        self._configs[server.name] = server

        transport = await self._opener(server, self.connect_timeout)
        try:
            session = await ProviderSession.connect(server.name, transport, self.request_timeout)
        except HandshakeError:
            await transport.close()
            raise

        try:
            await self.catalog.refresh(session)
        except (SessionError, TransportError, asyncio.TimeoutError) as exc:
            await session.close()
            self.catalog.remove_provider(server.name)
            raise HandshakeError(f"Listing capabilities of '{server.name}' failed: {exc}") from exc

        self._sessions[server.name] = session
        return session

    async def connect_all(self, servers: Iterable[ProviderConfig]) -> Dict[str, str]:
        """Connect each server in order; returns ``{name: error}`` for failures."""
        failures: Dict[str, str] = {}
        for server in servers:
            try:
                await self.connect_to_server(server)
            except (TransportError, SessionError, asyncio.TimeoutError) as exc:
                logger.error("Failed to connect to server '%s': %s", server.name, exc)
                failures[server.name] = str(exc) or exc.__class__.__name__
        return failures

    async def reconnect(self, name: str) -> ProviderSession:
        server = self._configs.get(name)
        if server is None:
            raise KeyError(name)
        return await self.connect_to_server(server)

    async def disconnect(self, name: str) -> None:
        session = self._sessions.pop(name, None)
        self.catalog.remove_provider(name)
        if session is not None:
            await session.close()

    async def cleanup(self) -> None:
        """Close every session exactly once."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            self.catalog.remove_provider(session.name)
            try:
                await session.close()
            except (OSError, TransportError) as exc:
                logger.warning("Error closing '%s': %s", session.name, exc)

    def get_session(self, name: str) -> Optional[ProviderSession]:
        return self._sessions.get(name)

    def session_names(self) -> List[str]:
        return list(self._sessions)

    def has_active_sessions(self) -> bool:
        return bool(self._sessions)

    def configured(self) -> List[str]:
        return list(self._configs)

    # ── Dispatch ──────────────────────────────────────────────────────────

    async def dispatch(self, request: InvocationRequest) -> DispatchOutcome:
        """
        Route one invocation request.

        Never raises for provider-side problems: unknown providers,
        malformed arguments, invocation and resource failures all come
        back as an error result.
        """
        outcome = DispatchOutcome(request=request, result=InvocationResult())

        try:
            outcome.route = parse_qualified_name(request.qualified_name)
        except ValueError as exc:
            outcome.result = InvocationResult.error(request.correlation_id, str(exc))
            return outcome

        route = outcome.route
        session = self._sessions.get(route.provider)
        if session is None:
            outcome.result = InvocationResult.error(
                request.correlation_id, f"Server {route.provider} not found"
            )
            return outcome

        try:
            arguments = json.loads(request.arguments_json or "{}")
        except json.JSONDecodeError as exc:
            outcome.result = InvocationResult.error(
                request.correlation_id, f"Invalid arguments for {request.qualified_name}: {exc}"
            )
            return outcome
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            outcome.result = InvocationResult.error(
                request.correlation_id, f"Arguments for {request.qualified_name} must be an object"
            )
            return outcome
        outcome.arguments = arguments

        logger.debug("Dispatching %s with %s", request.qualified_name, arguments)
        t0 = time.perf_counter()
        try:
            if isinstance(route, ListResourcesRoute):
                result = InvocationResult.text("", self.catalog.list_resources_text(route.provider))
            elif isinstance(route, ReadResourceRoute):
                result = await session.read_resource(route.resource, arguments)
            elif isinstance(route, ToolRoute):
                result = await session.call_tool(route.name, arguments)
            else:
                raise TypeError(f"Unhandled route: {route!r}")
        except (InvocationError, ResourceError) as exc:
            result = InvocationResult.error("", str(exc))

        result.correlation_id = request.correlation_id
        outcome.result = result
        outcome.duration_ms = int((time.perf_counter() - t0) * 1000)
        return outcome
