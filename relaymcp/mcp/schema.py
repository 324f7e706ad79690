"""Data models for provider capabilities, invocation requests, and results."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from relaymcp.mcp.uritemplate import template_variables

SEPARATOR = "__"
LIST_RESOURCES = "listResources"
READ_RESOURCE = "readResource"


class CapabilityKind(str, Enum):
    TOOL = "tool"
    RESOURCE = "resource"


class ToolDescriptor(BaseModel):
    """A tool as advertised by ``tools/list``."""

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    @classmethod
    def from_wire(cls, raw: Dict[str, Any]) -> "ToolDescriptor":
        schema = raw.get("inputSchema") or {"type": "object", "properties": {}}
        return cls(
            name=raw["name"],
            description=raw.get("description") or "",
            input_schema=schema,
        )


class ResourceDescriptor(BaseModel):
    """A concrete resource or a resource template from ``resources/*list``."""

    name: str
    description: str = ""
    uri: Optional[str] = None
    uri_template: Optional[str] = None
    mime_type: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None

    @classmethod
    def from_wire(cls, raw: Dict[str, Any]) -> "ResourceDescriptor":
        return cls(
            name=raw.get("name") or raw.get("uri") or raw.get("uriTemplate", ""),
            description=raw.get("description") or "",
            uri=raw.get("uri"),
            uri_template=raw.get("uriTemplate"),
            mime_type=raw.get("mimeType"),
            parameters=raw.get("parameters"),
        )

    def parameter_schema(self) -> Dict[str, Any]:
        """
        JSON schema for the arguments of ``readResource`` on this resource.

        Declared ``parameters`` win; they may be a full object schema or a
        bare ``{name: {type, description, required}}`` mapping. Otherwise
        the schema is derived from the URI template variables.
        """
        if self.parameters:
            if self.parameters.get("type") == "object":
                return self.parameters
            properties: Dict[str, Any] = {}
            required: List[str] = []
            for pname, pinfo in self.parameters.items():
                pinfo = dict(pinfo or {})
                if pinfo.pop("required", True):
                    required.append(pname)
                properties[pname] = pinfo
            return {"type": "object", "properties": properties, "required": required}

        properties = {}
        required = []
        for var, optional in template_variables(self.uri_template or ""):
            properties[var] = {"type": "string"}
            if not optional:
                required.append(var)
        return {"type": "object", "properties": properties, "required": required}

    def to_wire(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "description": self.description}
        if self.uri:
            data["uri"] = self.uri
        if self.uri_template:
            data["uriTemplate"] = self.uri_template
        if self.mime_type:
            data["mimeType"] = self.mime_type
        data["parameters"] = self.parameter_schema()
        return data


class Capability(BaseModel):
    """One entry of the flat, model-facing catalog."""

    qualified_name: str
    kind: CapabilityKind
    provider: str
    local_name: str
    description: str = ""
    parameter_schema: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def function_descriptor(self) -> Dict[str, Any]:
        """Chat-completion ``tools`` entry for this capability."""
        return {
            "type": "function",
            "function": {
                "name": self.qualified_name,
                "description": f"[{self.provider}] {self.description}".strip(),
                "parameters": self.parameter_schema,
            },
        }


class ContentPart(BaseModel):
    """A typed part of an invocation result: text or binary with a MIME type."""

    type: str = "text"
    text: Optional[str] = None
    data: Optional[str] = None  # base64
    mime_type: Optional[str] = None
    uri: Optional[str] = None

    @classmethod
    def from_tool_content(cls, raw: Dict[str, Any]) -> "ContentPart":
        kind = raw.get("type", "text")
        if kind == "text":
            return cls(type="text", text=raw.get("text", ""))
        if kind == "resource":
            inner = raw.get("resource") or {}
            return cls.from_resource_content(inner)
        return cls(type=kind, data=raw.get("data", ""), mime_type=raw.get("mimeType"))

    @classmethod
    def from_resource_content(cls, raw: Dict[str, Any]) -> "ContentPart":
        if "blob" in raw:
            return cls(
                type="resource",
                data=raw.get("blob") or "",
                mime_type=raw.get("mimeType"),
                uri=raw.get("uri"),
            )
        return cls(
            type="resource",
            text=raw.get("text", ""),
            mime_type=raw.get("mimeType"),
            uri=raw.get("uri"),
        )

    @property
    def is_binary(self) -> bool:
        return self.data is not None and self.text is None

    def byte_size(self) -> int:
        if not self.data:
            return 0
        try:
            return len(base64.b64decode(self.data, validate=False))
        except (binascii.Error, ValueError):
            return len(self.data)

    def placeholder(self) -> str:
        """Descriptive stand-in for binary payloads; bytes are never inlined."""
        mime = self.mime_type or "application/octet-stream"
        if self.type == "resource":
            return f"[resource {self.uri}: {mime}, {self.byte_size()} bytes]"
        return f"[{self.type}: {mime}, {self.byte_size()} bytes]"


class InvocationRequest(BaseModel):
    """A model-issued call against the catalog."""

    qualified_name: str
    arguments_json: str = "{}"
    correlation_id: str = ""


class InvocationResult(BaseModel):
    """Result of one dispatched invocation, in content-part form."""

    correlation_id: str = ""
    content: List[ContentPart] = Field(default_factory=list)
    is_error: bool = False

    @classmethod
    def error(cls, correlation_id: str, message: str) -> "InvocationResult":
        return cls(
            correlation_id=correlation_id,
            content=[ContentPart(type="text", text=f"Error: {message}")],
            is_error=True,
        )

    @classmethod
    def text(cls, correlation_id: str, text: str) -> "InvocationResult":
        return cls(correlation_id=correlation_id, content=[ContentPart(type="text", text=text)])


# ── Routed calls ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ToolRoute:
    provider: str
    name: str


@dataclass(frozen=True)
class ListResourcesRoute:
    provider: str


@dataclass(frozen=True)
class ReadResourceRoute:
    provider: str
    resource: str


RoutedCall = Union[ToolRoute, ListResourcesRoute, ReadResourceRoute]
