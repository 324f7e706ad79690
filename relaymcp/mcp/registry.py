"""Capability catalog: one flat, provider-namespaced view of every tool and resource."""

from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional, Tuple

from relaymcp.mcp.schema import (
    LIST_RESOURCES,
    READ_RESOURCE,
    SEPARATOR,
    Capability,
    CapabilityKind,
    ListResourcesRoute,
    ReadResourceRoute,
    ResourceDescriptor,
    RoutedCall,
    ToolDescriptor,
    ToolRoute,
)

logger = logging.getLogger(__name__)


def qualify(provider: str, local_name: str) -> str:
    """Namespace a local capability name with its provider."""
    return f"{provider}{SEPARATOR}{local_name}"


def parse_qualified_name(qualified_name: str) -> RoutedCall:
    """
    Turn a model-facing function name into a routed call.

    ``p__listResources`` lists resources, ``p__readResource__r`` reads
    resource ``r``; any other ``p__name`` invokes tool ``name``.
    Raises ``ValueError`` when the name carries no provider segment.
    """
    provider, sep, local = qualified_name.partition(SEPARATOR)
    if not sep or not provider or not local:
        raise ValueError(f"'{qualified_name}' is not a qualified capability name")

    if local == LIST_RESOURCES:
        return ListResourcesRoute(provider=provider)
    prefix = READ_RESOURCE + SEPARATOR
    if local.startswith(prefix) and len(local) > len(prefix):
        return ReadResourceRoute(provider=provider, resource=local[len(prefix):])
    return ToolRoute(provider=provider, name=local)


class CapabilityCatalog:
    """
    Aggregates the tools and resources of every connected provider.

    Each provider's entries are replaced wholesale by ``register_provider``
    (on connect and reconnect) and left untouched while it stays live.
    Besides real tools, every provider gets a synthetic ``listResources``
    capability and one ``readResource__<name>`` per declared resource, so
    the model can reach resources through plain function calls.
    """

    def __init__(self):
        self._capabilities: Dict[str, Capability] = {}
        self._tools: Dict[str, List[ToolDescriptor]] = {}
        self._resources: Dict[str, List[ResourceDescriptor]] = {}

    # ── Building ──────────────────────────────────────────────────────────

    def register_provider(
        self,
        provider: str,
        tools: List[ToolDescriptor],
        resources: List[ResourceDescriptor],
    ) -> List[Capability]:
        """Replace ``provider``'s entries with the given tools and resources."""
        self.remove_provider(provider)

        added: List[Capability] = []
        for tool in tools:
            if tool.name == LIST_RESOURCES or tool.name.startswith(READ_RESOURCE + SEPARATOR):
                logger.warning(
                    "Skipping tool '%s' on '%s': name is reserved for resource access",
                    tool.name,
                    provider,
                )
                continue
            added.append(Capability(
                qualified_name=qualify(provider, tool.name),
                kind=CapabilityKind.TOOL,
                provider=provider,
                local_name=tool.name,
                description=tool.description,
                parameter_schema=tool.input_schema,
            ))

        added.append(Capability(
            qualified_name=qualify(provider, LIST_RESOURCES),
            kind=CapabilityKind.RESOURCE,
            provider=provider,
            local_name=LIST_RESOURCES,
            description="List the resources this server offers and their parameters",
            parameter_schema={"type": "object", "properties": {}},
        ))

        for resource in resources:
            local = f"{READ_RESOURCE}{SEPARATOR}{resource.name}"
            added.append(Capability(
                qualified_name=qualify(provider, local),
                kind=CapabilityKind.RESOURCE,
                provider=provider,
                local_name=local,
                description=resource.description or f"Read resource {resource.name}",
                parameter_schema=resource.parameter_schema(),
            ))

        for capability in added:
            self._capabilities[capability.qualified_name] = capability
        self._tools[provider] = list(tools)
        self._resources[provider] = list(resources)
        return added

    async def refresh(self, session) -> List[Capability]:
        """Query a live session and rebuild its entries."""
        tools = await session.list_tools()
        resources = await session.list_resources()
        capabilities = self.register_provider(session.name, tools, resources)
        logger.info(
            "Catalog for '%s': tools=%s resources=%s",
            session.name,
            [t.name for t in tools],
            [r.name for r in resources],
        )
        return capabilities

    def remove_provider(self, provider: str) -> None:
        for name in [n for n, c in self._capabilities.items() if c.provider == provider]:
            del self._capabilities[name]
        self._tools.pop(provider, None)
        self._resources.pop(provider, None)

    # ── Lookup ────────────────────────────────────────────────────────────

    def resolve(self, qualified_name: str) -> Optional[Tuple[str, str, CapabilityKind]]:
        """Return ``(provider, local_name, kind)`` or None when unknown."""
        capability = self._capabilities.get(qualified_name)
        if capability is None:
            return None
        return capability.provider, capability.local_name, capability.kind

    def get(self, qualified_name: str) -> Optional[Capability]:
        return self._capabilities.get(qualified_name)

    def __contains__(self, qualified_name: str) -> bool:
        return qualified_name in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)

    def providers(self) -> List[str]:
        return list(self._tools)

    def capabilities(self, provider: Optional[str] = None) -> List[Capability]:
        return [c for c in self._capabilities.values() if provider is None or c.provider == provider]

    def tools(self, provider: str) -> List[ToolDescriptor]:
        return list(self._tools.get(provider, []))

    def resources(self, provider: str) -> List[ResourceDescriptor]:
        return list(self._resources.get(provider, []))

    def function_descriptors(self) -> List[Dict]:
        """All capabilities as chat-completion function descriptors."""
        return [c.function_descriptor() for c in self._capabilities.values()]

    # ── Text views ────────────────────────────────────────────────────────

    def list_resources_text(self, provider: str) -> str:
        """Locally synthesized answer to ``<provider>__listResources``."""
        return json.dumps(
            {"resources": [r.to_wire() for r in self.resources(provider)]},
            ensure_ascii=False,
        )

    def full_schema_text(self, qualified_name: str) -> str:
        """Full parameter schema for ONE capability (for on-demand lookup)."""
        capability = self.get(qualified_name)
        if capability is None:
            return f"Capability not found: {qualified_name}"

        schema = capability.parameter_schema or {}
        properties = schema.get("properties", {})
        required = set(schema.get("required", []))
        lines = [f"{capability.kind.value}: {capability.qualified_name}", f"  {capability.description}", "  Parameters:"]
        if not properties:
            lines.append("    (none)")
        for pname, pinfo in properties.items():
            req = " (required)" if pname in required else ""
            ptype = pinfo.get("type", "any") if isinstance(pinfo, dict) else "any"
            pdesc = pinfo.get("description", "") if isinstance(pinfo, dict) else ""
            lines.append(f"    - {pname}: {ptype}{req} {pdesc}".rstrip())
        return "\n".join(lines)
