"""Tests for tools.mcp_schema -- input schema normalization."""

import copy

from tools.mcp_schema import dereference_schema, normalize_schema


class TestExclusiveBounds:
    def test_numeric_exclusive_minimum_moves_to_minimum(self):
        out = normalize_schema({"type": "integer", "exclusiveMinimum": 0})
        assert out["minimum"] == 0
        assert out["exclusiveMinimum"] is True

    def test_numeric_exclusive_maximum_moves_to_maximum(self):
        out = normalize_schema({"type": "number", "exclusiveMaximum": 9.5})
        assert out["maximum"] == 9.5
        assert out["exclusiveMaximum"] is True

    def test_boolean_exclusive_left_alone(self):
        schema = {"type": "number", "minimum": 1, "exclusiveMinimum": True}
        assert normalize_schema(schema) == schema

    def test_nested_properties_are_rewritten(self):
        schema = {
            "type": "object",
            "properties": {
                "limit": {"type": "integer", "exclusiveMinimum": 0, "exclusiveMaximum": 100},
            },
        }
        limit = normalize_schema(schema)["properties"]["limit"]
        assert limit == {
            "type": "integer",
            "minimum": 0,
            "maximum": 100,
            "exclusiveMinimum": True,
            "exclusiveMaximum": True,
        }


class TestRequired:
    def test_non_list_required_removed(self):
        out = normalize_schema({"type": "object", "required": True, "properties": {}})
        assert "required" not in out

    def test_list_required_kept(self):
        out = normalize_schema({"type": "object", "required": ["a"]})
        assert out["required"] == ["a"]

    def test_nested_required_bool_removed(self):
        schema = {
            "type": "object",
            "properties": {"inner": {"type": "object", "required": "yes"}},
        }
        assert "required" not in normalize_schema(schema)["properties"]["inner"]


class TestRecursion:
    def test_items_dict_and_list(self):
        out = normalize_schema({
            "type": "object",
            "properties": {
                "xs": {"type": "array", "items": {"type": "integer", "exclusiveMinimum": 1}},
                "tuple": {"type": "array", "items": [{"type": "number", "exclusiveMaximum": 2}]},
            },
        })
        assert out["properties"]["xs"]["items"]["minimum"] == 1
        assert out["properties"]["tuple"]["items"][0]["maximum"] == 2

    def test_combinators_and_not(self):
        out = normalize_schema({
            "anyOf": [{"type": "integer", "exclusiveMinimum": 3}],
            "allOf": [{"required": False}],
            "oneOf": [{"type": "string"}],
            "not": {"type": "number", "exclusiveMaximum": 0},
            "additionalProperties": {"type": "integer", "exclusiveMinimum": -1},
        })
        assert out["anyOf"][0]["minimum"] == 3
        assert "required" not in out["allOf"][0]
        assert out["oneOf"] == [{"type": "string"}]
        assert out["not"]["maximum"] == 0
        assert out["additionalProperties"]["minimum"] == -1

    def test_idempotent(self):
        schema = {
            "type": "object",
            "required": ["q"],
            "properties": {
                "q": {"type": "string"},
                "n": {"type": "integer", "exclusiveMinimum": 0},
                "tags": {"type": "array", "items": {"type": "number", "exclusiveMaximum": 5}},
            },
        }
        once = normalize_schema(schema)
        assert normalize_schema(once) == once

    def test_input_not_mutated(self):
        schema = {"type": "object", "properties": {"n": {"exclusiveMinimum": 0}}}
        before = copy.deepcopy(schema)
        normalize_schema(schema)
        assert schema == before

    def test_non_dict_schema(self):
        assert normalize_schema(None) == {}
        assert normalize_schema("nope") == {}


class TestDereference:
    def test_defs_are_inlined(self):
        schema = {
            "type": "object",
            "properties": {"addr": {"$ref": "#/$defs/Address"}},
            "$defs": {"Address": {"type": "object", "properties": {"zip": {"type": "string"}}}},
        }
        out = normalize_schema(schema)
        assert "$defs" not in out
        assert out["properties"]["addr"]["properties"]["zip"] == {"type": "string"}

    def test_definitions_spelling(self):
        schema = {
            "properties": {"n": {"$ref": "#/definitions/N"}},
            "definitions": {"N": {"type": "integer", "exclusiveMinimum": 0}},
        }
        out = normalize_schema(schema)
        assert out["properties"]["n"]["minimum"] == 0

    def test_self_reference_does_not_recurse_forever(self):
        schema = {
            "properties": {"node": {"$ref": "#/$defs/Node"}},
            "$defs": {"Node": {"type": "object", "properties": {"next": {"$ref": "#/$defs/Node"}}}},
        }
        out = dereference_schema(schema)
        assert out["properties"]["node"]["properties"]["next"] == {"$ref": "#/$defs/Node"}

    def test_unknown_ref_left_in_place(self):
        schema = {"properties": {"x": {"$ref": "#/$defs/Missing"}}, "$defs": {"Other": {}}}
        assert dereference_schema(schema)["properties"]["x"] == {"$ref": "#/$defs/Missing"}
