"""
MCP client layer for relaymcp.

Connects to tool providers over stdio subprocesses or SSE push streams,
aggregates their tools and resources into one provider-namespaced
catalog, and routes model-issued calls back to the right session.

    Transport  -->  ProviderSession  -->  CapabilityCatalog
                         ^                      |
                         +---- ProviderPool <---+
"""

from relaymcp.mcp.executor import DispatchOutcome, ProviderPool
from relaymcp.mcp.registry import CapabilityCatalog, parse_qualified_name, qualify
from relaymcp.mcp.schema import Capability, ContentPart, InvocationRequest, InvocationResult
from relaymcp.mcp.session import HandshakeError, InvocationError, ProviderSession, ResourceError
from relaymcp.mcp.transport import SSETransport, StdioTransport, TransportError

__all__ = [
    "Capability",
    "CapabilityCatalog",
    "ContentPart",
    "DispatchOutcome",
    "HandshakeError",
    "InvocationError",
    "InvocationRequest",
    "InvocationResult",
    "ProviderPool",
    "ProviderSession",
    "ResourceError",
    "SSETransport",
    "StdioTransport",
    "TransportError",
    "parse_qualified_name",
    "qualify",
]
