"""Tests for the capability catalog and qualified-name routing."""

import json

import pytest

from relaymcp.mcp.registry import CapabilityCatalog, parse_qualified_name, qualify
from relaymcp.mcp.schema import (
    CapabilityKind,
    ListResourcesRoute,
    ReadResourceRoute,
    ResourceDescriptor,
    ToolDescriptor,
    ToolRoute,
)


def _tool(name, **schema):
    return ToolDescriptor(name=name, description=f"{name} tool", input_schema={"type": "object", **schema})


class TestQualifiedNames:
    """Tests for qualify / parse_qualified_name."""

    @pytest.mark.parametrize("p1,p2", [("health", "exchange"), ("a", "a-b"), ("x_1", "x-1")])
    def test_namespacing_is_collision_free(self, p1, p2):
        for local in ("exchange", "readResource__img", "listResources"):
            assert qualify(p1, local) != qualify(p2, local)

    def test_parse_tool(self):
        assert parse_qualified_name("health__healthMetrics") == ToolRoute("health", "healthMetrics")

    def test_parse_list_resources(self):
        assert parse_qualified_name("health__listResources") == ListResourcesRoute("health")

    def test_parse_read_resource(self):
        assert parse_qualified_name("health__readResource__healthImage") == \
            ReadResourceRoute("health", "healthImage")

    def test_tool_name_containing_separator(self):
        """Only the first separator splits provider from local name."""
        assert parse_qualified_name("p__get__thing") == ToolRoute("p", "get__thing")

    @pytest.mark.parametrize("name", ["plain", "__tool", "p__", ""])
    def test_unqualified_names_rejected(self, name):
        with pytest.raises(ValueError):
            parse_qualified_name(name)

    def test_round_trip_through_qualify(self):
        assert parse_qualified_name(qualify("srv", "tool")) == ToolRoute("srv", "tool")


class TestCapabilityCatalog:
    """Tests for CapabilityCatalog."""

    def test_register_tools_and_meta_capabilities(self):
        catalog = CapabilityCatalog()
        image = ResourceDescriptor(
            name="healthImage",
            uri_template="health://image/{deviceId}/{date?}",
            description="Chart",
        )

        catalog.register_provider("health", [_tool("healthMetrics")], [image])

        assert set(c.qualified_name for c in catalog.capabilities()) == {
            "health__healthMetrics",
            "health__listResources",
            "health__readResource__healthImage",
        }
        assert catalog.resolve("health__healthMetrics") == ("health", "healthMetrics", CapabilityKind.TOOL)
        assert catalog.resolve("health__readResource__healthImage") == \
            ("health", "readResource__healthImage", CapabilityKind.RESOURCE)
        assert catalog.resolve("health__nope") is None

    def test_read_resource_carries_parameter_schema(self):
        catalog = CapabilityCatalog()
        image = ResourceDescriptor(
            name="healthImage",
            uri_template="health://image/{deviceId}/{date?}",
            parameters={
                "deviceId": {"type": "string", "description": "Device"},
                "date": {"type": "string", "required": False},
            },
        )
        catalog.register_provider("health", [], [image])

        schema = catalog.get("health__readResource__healthImage").parameter_schema

        assert schema["required"] == ["deviceId"]
        assert set(schema["properties"]) == {"deviceId", "date"}
        assert "required" not in schema["properties"]["date"]

    def test_template_schema_without_declared_parameters(self):
        schema = ResourceDescriptor(name="r", uri_template="x://{a}/{b?}").parameter_schema()

        assert schema["required"] == ["a"]
        assert schema["properties"] == {"a": {"type": "string"}, "b": {"type": "string"}}

    def test_zero_resources_still_lists(self):
        """A provider without resources still gets listResources, answering []."""
        catalog = CapabilityCatalog()
        catalog.register_provider("exchange", [_tool("exchange")], [])

        assert "exchange__listResources" in catalog
        assert json.loads(catalog.list_resources_text("exchange")) == {"resources": []}

    def test_same_local_name_on_two_providers(self):
        catalog = CapabilityCatalog()
        catalog.register_provider("a", [_tool("search")], [])
        catalog.register_provider("b", [_tool("search")], [])

        assert catalog.resolve("a__search")[0] == "a"
        assert catalog.resolve("b__search")[0] == "b"
        assert len(catalog) == 4

    def test_reregister_replaces_entries(self):
        """Reconnecting rebuilds a provider's entries wholesale."""
        catalog = CapabilityCatalog()
        catalog.register_provider("a", [_tool("old")], [])
        catalog.register_provider("b", [_tool("keep")], [])

        catalog.register_provider("a", [_tool("new")], [])

        assert "a__old" not in catalog
        assert "a__new" in catalog
        assert "b__keep" in catalog

    def test_reserved_tool_names_skipped(self):
        catalog = CapabilityCatalog()
        catalog.register_provider("a", [_tool("listResources"), _tool("readResource__x"), _tool("ok")], [])

        tools = [c.local_name for c in catalog.capabilities("a") if c.kind == CapabilityKind.TOOL]
        assert tools == ["ok"]

    def test_remove_provider(self):
        catalog = CapabilityCatalog()
        catalog.register_provider("a", [_tool("t")], [])
        catalog.remove_provider("a")

        assert len(catalog) == 0
        assert catalog.providers() == []

    def test_function_descriptors(self):
        catalog = CapabilityCatalog()
        catalog.register_provider("exchange", [_tool("exchange", properties={"rmb": {"type": "number"}})], [])

        descriptors = {d["function"]["name"]: d for d in catalog.function_descriptors()}

        exchange = descriptors["exchange__exchange"]
        assert exchange["type"] == "function"
        assert exchange["function"]["description"] == "[exchange] exchange tool"
        assert exchange["function"]["parameters"]["properties"] == {"rmb": {"type": "number"}}

    def test_list_resources_text(self):
        catalog = CapabilityCatalog()
        catalog.register_provider("h", [], [ResourceDescriptor(name="img", uri_template="h://{id}", mime_type="image/png")])

        listed = json.loads(catalog.list_resources_text("h"))["resources"]

        assert listed[0]["name"] == "img"
        assert listed[0]["uriTemplate"] == "h://{id}"
        assert listed[0]["parameters"]["required"] == ["id"]

    def test_full_schema_text(self):
        catalog = CapabilityCatalog()
        catalog.register_provider(
            "exchange",
            [_tool("exchange", properties={"rmb": {"type": "number", "description": "Amount"}}, required=["rmb"])],
            [],
        )

        text = catalog.full_schema_text("exchange__exchange")

        assert "tool: exchange__exchange" in text
        assert "rmb: number (required) Amount" in text
        assert catalog.full_schema_text("nope__x") == "Capability not found: nope__x"
