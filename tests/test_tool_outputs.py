"""Tests for the tool_outputs.* introspection tools."""

import pytest

from stepwise.errors import ToolError
from stepwise.models import ToolOutputRecord, ToolResultMode
from stepwise.tools.base import ToolContext
from stepwise.tools.registry import ToolRegistry
from stepwise.tools.tool_outputs import (
    compile_path,
    count_nested_items,
    format_bytes,
    infer_schema,
    query_path,
    register_tool_output_tools,
    sample_indices,
)

DATA = {
    "users": [
        {"id": 1, "name": "ada", "tags": ["a", "b"]},
        {"id": 2, "name": "bob", "tags": []},
        {"id": 3, "name": "cy", "tags": ["c"]},
    ],
    "meta": {"page": 1, "next": None},
}


@pytest.fixture
async def tools(output_store):
    await output_store.store(ToolOutputRecord(
        id="out-1", tool_name="users.list", message_id="m1", conversation_id="conv-1",
        output=DATA, parameters={"page": 1}, created_at=1_000,
    ))
    await output_store.store(ToolOutputRecord(
        id="out-2", tool_name="users.count", message_id="m1", conversation_id="conv-1",
        output=[1, 2, 3], created_at=2_000, success=False,
    ))
    registry = ToolRegistry()
    register_tool_output_tools(registry, output_store)
    return registry


async def run(registry, name, **args):
    result = await registry.get(name).execute(args, ToolContext())
    assert result.success
    return result.output


class TestPaths:
    def test_invalid(self):
        with pytest.raises(ToolError, match="must start with"):
            query_path(DATA, "users")
        with pytest.raises(ToolError, match=r"^Invalid JSONPath '\$\.users\[': "):
            query_path(DATA, "$.users[")
        with pytest.raises(ToolError, match="Each path must be a string"):
            compile_path(3)

    def test_names_indexes_wildcards(self):
        assert query_path(DATA, "$") == [DATA]
        assert query_path(DATA, "$.users[*].name") == ["ada", "bob", "cy"]
        assert query_path(DATA, "$.users[-1].id") == [3]
        assert query_path(DATA, "$['meta']['page']") == [1]
        assert query_path(DATA, "$.meta.*") == [1, None]
        assert query_path(DATA, "$.users[9]") == []
        assert query_path(DATA, "$.missing") == []

    def test_recursive_descent(self):
        assert sorted(query_path(DATA, "$..id")) == [1, 2, 3]
        assert sorted(query_path(DATA, "$..tags[0]")) == ["a", "c"]

    def test_slices(self):
        assert query_path(DATA, "$.users[0:2].id") == [1, 2]
        assert query_path(DATA, "$.users[::2].name") == ["ada", "cy"]

    def test_filters(self):
        assert query_path(DATA, "$.users[?@.id > 1].name") == ["bob", "cy"]
        assert query_path(DATA, "$.users[?@.name == 'ada'].id") == [1]
        assert query_path(DATA, "$.users[?@.id > 1].missing") == []

    def test_compiled_paths_are_reused(self):
        assert compile_path("$.users[*]") is compile_path("$.users[*]")


class TestHelpers:
    def test_format_bytes(self):
        assert format_bytes(10) == "10 B"
        assert format_bytes(2048) == "2.0 KB"
        assert format_bytes(3 * 1024 * 1024) == "3.0 MB"

    def test_sample_indices(self):
        assert sample_indices(0) == []
        assert sample_indices(1) == [0]
        assert sample_indices(5) == [0, 2, 4]

    def test_count_nested(self):
        assert count_nested_items([[1, 2], [3], 4]) == 6
        assert count_nested_items({"a": 1}) == 0

    def test_infer_schema(self):
        schema = infer_schema(DATA, 0, 5, True)
        assert schema["properties"]["users"] == {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "number"},
                    "name": {"type": "string"},
                    "tags": {"type": "array", "items": {"type": "string"}},
                },
            },
        }
        assert infer_schema(DATA, 0, 1, True)["properties"]["meta"] == {}
        assert infer_schema([1], 0, 5, False) == {"type": "array", "items": {}}


class TestTools:
    async def test_result_modes(self, tools):
        assert tools.get("tool_outputs.read").result_mode is ToolResultMode.INLINE
        assert tools.get("tool_outputs.sample").result_mode is ToolResultMode.AUTO

    async def test_read(self, tools):
        out = await run(tools, "tool_outputs.read", id="out-1", conversation_id="conv-1")
        assert out["output"] == DATA
        assert out["parameters"] == {"page": 1}

    async def test_read_rejects_other_conversation(self, tools):
        with pytest.raises(ToolError, match="does not match"):
            await tools.get("tool_outputs.read").execute(
                {"id": "out-1", "conversation_id": "conv-2"}, ToolContext()
            )

    async def test_missing_output(self, tools):
        with pytest.raises(ToolError, match="Tool output not found: nope"):
            await tools.get("tool_outputs.stats").execute({"id": "nope"}, ToolContext())

    async def test_list(self, tools):
        out = await run(tools, "tool_outputs.list", limit=1)
        assert out["total"] == 2
        assert out["has_more"] is True
        [entry] = out["outputs"]
        assert entry["id"] == "out-2"
        assert entry["summary"] == {"type": "array", "items": 3}
        assert entry["preview"] == "[1,2,3]"

    async def test_list_filters(self, tools):
        out = await run(tools, "tool_outputs.list", success=True, include_preview=False)
        assert [o["id"] for o in out["outputs"]] == ["out-1"]
        assert "preview" not in out["outputs"][0]

    async def test_stats(self, tools):
        out = await run(tools, "tool_outputs.stats", id="out-1")
        assert out["structure"]["root_type"] == "object"
        assert out["types"]["array"] == 4
        users = next(a for a in out["arrays"] if a["path"] == "$.users")
        assert users == {"path": "$.users", "length": 3, "item_type": "object"}
        assert out["size"]["formatted"].endswith("B")

    async def test_extract_keyed(self, tools):
        out = await run(tools, "tool_outputs.extract", id="out-1", paths=["$.users[*].id", "$.nope"])
        assert out["extracted"] == {"$.users[*].id": [1, 2, 3], "$.nope": None}
        assert out["missing_paths"] == ["$.nope"]

    async def test_extract_flatten_and_paths(self, tools):
        flat = await run(tools, "tool_outputs.extract", id="out-1", flatten=True,
                         paths=["$.users[0].name", "$.meta.page"])
        assert flat["extracted"] == ["ada", 1]
        listed = await run(tools, "tool_outputs.extract", id="out-1", include_paths=True,
                           paths=["$.meta.page"], default_value=0)
        assert listed["extracted"] == [{"path": "$.meta.page", "value": [1]}]

    async def test_count(self, tools):
        out = await run(tools, "tool_outputs.count", id="out-1", counts=[
            {"name": "users", "path": "$.users"},
            {"name": "meta_keys", "path": "$.meta", "count_type": "object_keys"},
            {"name": "names", "path": "$.users[*].name", "count_type": "matches"},
            {"name": "tags", "path": "$.users[*].tags", "count_type": "nested_total"},
        ])
        assert out["counts"] == {"users": 3, "meta_keys": 2, "names": 3, "tags": 3}
        assert out["total"] == 11

    async def test_sample_strategies(self, tools):
        first = await run(tools, "tool_outputs.sample", id="out-1", path="$.users", size=2,
                          strategy="first")
        assert [u["id"] for u in first["sample"]] == [1, 2]
        last = await run(tools, "tool_outputs.sample", id="out-1", path="$.users", size=2,
                         strategy="last")
        assert last["indices"] == [1, 2]
        systematic = await run(tools, "tool_outputs.sample", id="out-1", path="$.users", size=5,
                               strategy="systematic", stride=2)
        assert systematic["indices"] == [0, 2]
        a = await run(tools, "tool_outputs.sample", id="out-1", path="$.users", size=2, seed=7)
        b = await run(tools, "tool_outputs.sample", id="out-1", path="$.users", size=2, seed=7)
        assert a["indices"] == b["indices"]
        assert a["total_items"] == 3

    async def test_sample_requires_array(self, tools):
        with pytest.raises(ToolError, match="did not match an array"):
            await tools.get("tool_outputs.sample").execute(
                {"id": "out-1", "path": "$.meta", "size": 1}, ToolContext()
            )

    async def test_stats_include_schema_and_paths(self, tools):
        plain = await run(tools, "tool_outputs.stats", id="out-1")
        assert "schema" not in plain
        out = await run(tools, "tool_outputs.stats", id="out-1", include_schema=True,
                        paths=["$..tags"])
        assert out["schema"]["type"] == "object"
        assert [a["path"] for a in out["arrays"]] == ["$..tags"] * 3
        assert out["types"]["array"] == 3

    async def test_extract_with_filters_and_descent(self, tools):
        out = await run(tools, "tool_outputs.extract", id="out-1",
                        paths=["$.users[?@.id >= 2].name", "$.users[0:1].id"])
        assert out["extracted"] == {"$.users[?@.id >= 2].name": ["bob", "cy"], "$.users[0:1].id": [1]}
        assert "missing_paths" not in out

    async def test_extract_flatten_default_for_missing(self, tools):
        out = await run(tools, "tool_outputs.extract", id="out-1", flatten=True,
                        paths=["$.nope", "$..page"], default_value="n/a")
        assert out["extracted"] == ["n/a", 1]
        assert out["missing_paths"] == ["$.nope"]

    @pytest.mark.parametrize("name,args,message", [
        ("tool_outputs.extract", {"id": "out-1", "paths": "$.a"}, "Missing 'paths' array"),
        ("tool_outputs.extract", {"id": "out-1", "paths": []}, "'paths' array must not be empty"),
        ("tool_outputs.extract", {"id": "out-1", "paths": [5]}, "Each path must be a string"),
        ("tool_outputs.extract", {"id": "out-1", "paths": ["$.users[?"]}, "Invalid JSONPath"),
        ("tool_outputs.count", {"id": "out-1"}, "Missing 'counts' array"),
        ("tool_outputs.count", {"id": "out-1", "counts": [{"path": "$"}]},
         "Each count operation requires 'name'"),
        ("tool_outputs.count", {"id": "out-1", "counts": [{"name": "n"}]},
         "Each count operation requires 'path'"),
        ("tool_outputs.sample", {"id": "out-1", "size": 1}, "Missing 'path'"),
        ("tool_outputs.sample", {"id": "out-1", "path": "$.users"}, "Missing 'size'"),
        ("tool_outputs.read", {"id": " "}, "Missing 'id'"),
    ])
    async def test_argument_errors(self, tools, name, args, message):
        with pytest.raises(ToolError, match=message):
            await tools.get(name).execute(args, ToolContext())

    async def test_read_requires_stored_conversation(self, tools, output_store):
        await output_store.store(ToolOutputRecord(
            id="out-3", tool_name="x", message_id="m1", conversation_id=None, output={}, created_at=3_000,
        ))
        with pytest.raises(ToolError, match="Stored output missing conversation_id"):
            await tools.get("tool_outputs.read").execute(
                {"id": "out-3", "conversation_id": "conv-1"}, ToolContext()
            )
