"""Tests for the tool registry."""

import pytest

from stepwise.errors import ToolError
from stepwise.tools.registry import ToolRegistry

from conftest import EchoTool, GuardedTool


class TestToolRegistry:
    def test_lookup_and_listing(self):
        registry = ToolRegistry([GuardedTool(), EchoTool()])
        assert "test.echo" in registry
        assert len(registry) == 2
        assert registry.get("nope") is None
        assert [m.name for m in registry.list_metadata()] == ["test.echo", "test.guarded"]
        assert registry.list_metadata()[1].requires_approval is True

    def test_duplicate_registration(self):
        registry = ToolRegistry([EchoTool()])
        with pytest.raises(ValueError, match="already registered"):
            registry.register(EchoTool())

    def test_valid_args(self):
        registry = ToolRegistry([EchoTool()])
        registry.validate_args(registry.get("test.echo").metadata(), {"text": "hi"})

    def test_missing_property(self):
        registry = ToolRegistry([EchoTool()])
        with pytest.raises(ToolError) as exc:
            registry.validate_args(registry.get("test.echo").metadata(), {})
        assert exc.value.message == "Invalid args for tool test.echo: 'text' is a required property"

    def test_nested_path_in_message(self):
        registry = ToolRegistry([EchoTool()])
        with pytest.raises(ToolError) as exc:
            registry.validate_args(registry.get("test.echo").metadata(), {"text": 5})
        assert exc.value.message.startswith("Invalid args for tool test.echo: text: 5 is not of type")

    def test_invalid_schema(self):
        registry = ToolRegistry()
        metadata = EchoTool().metadata()
        metadata.parameters = {"type": "bogus"}
        with pytest.raises(ToolError, match="tool schema is invalid"):
            registry.validate_args(metadata, {})
