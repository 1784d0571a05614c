"""
JSON Schema normalization for MCP tool input schemas.

MCP servers publish draft-2020 style schemas; several model providers only
accept the older draft-4 shape.  ``normalize_schema`` rewrites the parts that
differ and inlines local ``$ref`` definitions so the model sees one
self-contained object.

The transformation is pure (the input is never mutated) and idempotent.
"""

import copy
from typing import Any, Dict

_SUBSCHEMA_LISTS = ("allOf", "anyOf", "oneOf")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def dereference_schema(schema: dict) -> dict:
    """Recursively inline JSON Schema ``$ref`` definitions.

    Handles ``#/$defs/Name`` and ``#/definitions/Name`` pointers; anything
    else is left as-is.  Self-referencing definitions are inlined once and
    the inner reference is kept.
    """
    defs = schema.get("$defs", schema.get("definitions", {}))
    if not defs or not isinstance(defs, dict):
        return copy.deepcopy(schema)

    def _resolve(obj, seen):
        if isinstance(obj, dict):
            ref_path = obj.get("$ref")
            if isinstance(ref_path, str):
                for prefix in ("#/$defs/", "#/definitions/"):
                    if ref_path.startswith(prefix):
                        key = ref_path[len(prefix):]
                        if key in defs and key not in seen:
                            return _resolve(copy.deepcopy(defs[key]), seen | {key})
                return dict(obj)
            return {k: _resolve(v, seen) for k, v in obj.items()}
        if isinstance(obj, list):
            return [_resolve(item, seen) for item in obj]
        return obj

    result = _resolve(
        {k: v for k, v in schema.items() if k not in ("$defs", "definitions")},
        frozenset(),
    )
    return result


def _normalize_node(node: Any) -> Any:
    if not isinstance(node, dict):
        return node

    out: Dict[str, Any] = dict(node)

    for exclusive, bound in (("exclusiveMinimum", "minimum"), ("exclusiveMaximum", "maximum")):
        value = out.get(exclusive)
        if _is_number(value):
            out[bound] = value
            out[exclusive] = True

    if "required" in out and not isinstance(out["required"], list):
        del out["required"]

    props = out.get("properties")
    if isinstance(props, dict):
        out["properties"] = {k: _normalize_node(v) for k, v in props.items()}

    items = out.get("items")
    if isinstance(items, dict):
        out["items"] = _normalize_node(items)
    elif isinstance(items, list):
        out["items"] = [_normalize_node(i) for i in items]

    additional = out.get("additionalProperties")
    if isinstance(additional, dict):
        out["additionalProperties"] = _normalize_node(additional)

    for key in _SUBSCHEMA_LISTS:
        subs = out.get(key)
        if isinstance(subs, list):
            out[key] = [_normalize_node(s) for s in subs]

    if isinstance(out.get("not"), dict):
        out["not"] = _normalize_node(out["not"])

    return out


def normalize_schema(schema: Any) -> Dict[str, Any]:
    """Return a draft-4 compatible copy of an MCP tool ``inputSchema``.

    - numeric ``exclusiveMinimum`` / ``exclusiveMaximum`` move to
      ``minimum`` / ``maximum`` and become ``true``
    - a ``required`` that is not a list is removed
    - recursion into ``properties``, ``items``, ``additionalProperties``,
      ``allOf`` / ``anyOf`` / ``oneOf`` and ``not``
    - local ``$ref`` pointers are inlined
    """
    if not isinstance(schema, dict):
        return {}
    if "$defs" in schema or "definitions" in schema:
        schema = dereference_schema(schema)
    return _normalize_node(copy.deepcopy(schema))
