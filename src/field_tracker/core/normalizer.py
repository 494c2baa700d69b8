"""Update-grammar normalizer.

Rewrites an object-style update document (``{"$set": ..., "$inc": ...}``),
together with its filter and array filters, into an equivalent list of
update-pipeline stages so a computed stage can be appended after it.

Operators are translated in the order they appear, one stage per operator
(positional writes get a stage each). Positional segments become ``$map``
rewrites of the enclosing array:

- ``$``      first element matching the filter's conditions on that array
- ``$[]``    every element
- ``$[id]``  elements matching the array filter named ``id``
- ``N``      element at index N

Update pipelines already in pipeline form pass through unchanged.
"""

from __future__ import annotations

from typing import Any, Callable, Iterator

from field_tracker.core.paths import FieldPath, is_positional
from field_tracker.errors import UnsupportedUpdateError

Expression = Any
ValueBuilder = Callable[[str], Expression]

_COMPARISONS = frozenset({"$eq", "$ne", "$gt", "$gte", "$lt", "$lte"})


class _Remove:
    def __repr__(self) -> str:
        return "REMOVE"


REMOVE = _Remove()


def literal(value: Any) -> Any:
    """Protect a value from being read as an aggregation expression.

    Strings starting with ``$`` would be field references, and documents
    assigned by ``$set`` would be merged into existing sub-documents.
    """
    if isinstance(value, (dict, list)) or (isinstance(value, str) and value.startswith("$")):
        return {"$literal": value}
    return value


def _and(parts: list[Expression]) -> Expression:
    return parts[0] if len(parts) == 1 else {"$and": parts}


def _first_marker(path: FieldPath) -> int | None:
    for index, segment in enumerate(path.segments):
        if is_positional(segment) or segment.isdigit():
            return index
    return None


def is_operator_update(update: dict[str, Any]) -> bool:
    return any(key.startswith("$") for key in update)


class _Translator:
    """Translates one object-style update. Holds the filter context and a variable counter."""

    def __init__(self, filter: dict[str, Any] | None, array_filters: list[dict[str, Any]] | None) -> None:
        self._filter = filter or {}
        self._array_filters = array_filters or []
        self._counter = 0

    def _var(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}{self._counter}"

    # -------------------------------------------------------------------------
    # Query conditions -> aggregation expressions
    # -------------------------------------------------------------------------

    def predicate(self, ref: str, condition: Any) -> Expression:
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            parts: list[Expression] = []
            for op, arg in condition.items():
                if op in _COMPARISONS:
                    parts.append({op: [ref, literal(arg)]})
                elif op == "$in":
                    parts.append({"$in": [ref, {"$literal": list(arg)}]})
                elif op == "$nin":
                    parts.append({"$not": [{"$in": [ref, {"$literal": list(arg)}]}]})
                elif op == "$exists":
                    missing = {"$eq": [{"$type": ref}, "missing"]}
                    parts.append({"$not": [missing]} if arg else missing)
                else:
                    raise UnsupportedUpdateError(op, "query operator not supported in positional filters")
            return _and(parts)
        return {"$eq": [ref, literal(condition)]}

    def match(self, ref: str, document: dict[str, Any]) -> Expression:
        """Expression true when the value at ``ref`` matches a query sub-document."""
        if document and all(k.startswith("$") for k in document) and "$and" not in document:
            return self.predicate(ref, document)
        parts: list[Expression] = []
        for key, condition in document.items():
            if key == "$and":
                parts.extend(self.match(ref, sub) for sub in condition)
            elif key.startswith("$"):
                raise UnsupportedUpdateError(key, "logical operator not supported in positional filters")
            else:
                parts.append(self.predicate(f"{ref}.{key}", condition))
        if not parts:
            return True
        return _and(parts)

    def _filter_items(self, document: dict[str, Any]) -> Iterator[tuple[str, Any]]:
        for key, value in document.items():
            if key == "$and":
                for sub in value:
                    yield from self._filter_items(sub)
            elif not key.startswith("$"):
                yield key, value

    def query_condition(self, array_path: FieldPath, elem_ref: str) -> Expression:
        parts: list[Expression] = []
        for key, condition in self._filter_items(self._filter):
            key_path = FieldPath.parse(key)
            if key_path == array_path:
                if isinstance(condition, dict) and "$elemMatch" in condition:
                    parts.append(self.match(elem_ref, condition["$elemMatch"]))
                else:
                    parts.append(self.predicate(elem_ref, condition))
            elif array_path.is_prefix_of(key_path, strict=True):
                parts.append(self.predicate(f"{elem_ref}.{key_path.relative_to(array_path)}", condition))
        if not parts:
            raise UnsupportedUpdateError("$", f"the filter has no condition on {array_path}")
        return _and(parts)

    def array_filter_condition(self, identifier: str, elem_ref: str) -> Expression:
        parts: list[Expression] = []
        for array_filter in self._array_filters:
            for key, condition in array_filter.items():
                key_path = FieldPath.parse(key)
                if key_path.segments[0] != identifier:
                    continue
                rest = FieldPath(key_path.segments[1:])
                ref = elem_ref if rest.is_root else f"{elem_ref}.{rest}"
                parts.append(self.predicate(ref, condition))
        if not parts:
            raise UnsupportedUpdateError(f"$[{identifier}]", "no array filter declares this identifier")
        return _and(parts)

    # -------------------------------------------------------------------------
    # Path rewriting
    # -------------------------------------------------------------------------

    def _map_index(self, array_ref: str, elem: str, index: Expression, new_elem: Expression) -> Expression:
        idx = self._var("idx")
        return {
            "$map": {
                "input": {"$range": [0, {"$size": array_ref}]},
                "as": idx,
                "in": {
                    "$let": {
                        "vars": {elem: {"$arrayElemAt": [array_ref, f"$${idx}"]}},
                        "in": {"$cond": [{"$eq": [f"$${idx}", index]}, new_elem, f"$${elem}"]},
                    }
                },
            }
        }

    def rewrite_array(
        self,
        array_ref: str,
        array_path: FieldPath | None,
        marker: str,
        rest: FieldPath,
        build: ValueBuilder,
    ) -> Expression:
        elem = self._var("elem")
        elem_ref = f"$${elem}"
        new_elem = self.rewrite_value(elem_ref, rest, build)

        if marker == "$[]":
            body: Expression = {"$map": {"input": array_ref, "as": elem, "in": new_elem}}
        elif marker.startswith("$["):
            condition = self.array_filter_condition(marker[2:-1], elem_ref)
            body = {"$map": {"input": array_ref, "as": elem, "in": {"$cond": [condition, new_elem, elem_ref]}}}
        elif marker == "$":
            if array_path is None:
                raise UnsupportedUpdateError("$", "positional operator nested below another array marker")
            condition = self.query_condition(array_path, elem_ref)
            first = self._var("first")
            body = {
                "$let": {
                    "vars": {
                        first: {
                            "$indexOfArray": [{"$map": {"input": array_ref, "as": elem, "in": condition}}, True]
                        }
                    },
                    "in": self._map_index(array_ref, elem, f"$${first}", new_elem),
                }
            }
        else:
            body = self._map_index(array_ref, elem, int(marker), new_elem)
        return {"$cond": [{"$isArray": array_ref}, body, array_ref]}

    def rewrite_value(self, base_ref: str, rest: FieldPath, build: ValueBuilder) -> Expression:
        """New value of the sub-document at ``base_ref`` once ``rest`` is assigned."""
        if rest.is_root:
            value = build(base_ref)
            return None if value is REMOVE else value

        marker_at = _first_marker(rest)
        if marker_at == 0:
            return self.rewrite_array(base_ref, None, rest.segments[0], FieldPath(rest.segments[1:]), build)

        head = rest.segments[0]
        child_ref = f"{base_ref}.{head}"
        if len(rest) == 1:
            value = build(child_ref)
            if value is REMOVE:
                return {
                    "$arrayToObject": {
                        "$filter": {
                            "input": {"$objectToArray": base_ref},
                            "as": "kv",
                            "cond": {"$ne": ["$$kv.k", head]},
                        }
                    }
                }
            return {"$mergeObjects": [base_ref, {head: value}]}
        return {"$mergeObjects": [base_ref, {head: self.rewrite_value(child_ref, FieldPath(rest.segments[1:]), build)}]}

    def assign(self, path: FieldPath, build: ValueBuilder) -> tuple[str, Expression]:
        """Key and expression of a ``$set`` stage entry writing ``path``."""
        marker_at = _first_marker(path)
        if marker_at is None:
            return str(path), build(path.ref)
        array_path = FieldPath(path.segments[:marker_at])
        if array_path.is_root:
            raise UnsupportedUpdateError(str(path), "positional segment at the document root")
        return str(array_path), self.rewrite_array(
            array_path.ref,
            array_path,
            path.segments[marker_at],
            FieldPath(path.segments[marker_at + 1:]),
            build,
        )

    # -------------------------------------------------------------------------
    # Operators
    # -------------------------------------------------------------------------

    def _pull_condition(self, ref: str, condition: Any) -> Expression:
        if isinstance(condition, dict):
            return self.match(ref, condition)
        return {"$eq": [ref, literal(condition)]}

    def value_builder(self, op: str, arg: Any) -> ValueBuilder:
        if op == "$set":
            return lambda cur: literal(arg)
        if op == "$setOnInsert":
            raise UnsupportedUpdateError(
                op, "an update pipeline cannot tell an upsert insert from a matched document"
            )
        if op == "$unset":
            return lambda cur: REMOVE
        if op == "$inc":
            return lambda cur: {"$add": [{"$ifNull": [cur, 0]}, arg]}
        if op == "$mul":
            return lambda cur: {"$multiply": [{"$ifNull": [cur, 0]}, arg]}
        if op == "$min":
            return lambda cur: {"$min": [cur, literal(arg)]}
        if op == "$max":
            return lambda cur: {"$max": [cur, literal(arg)]}
        if op == "$currentDate":
            kind = arg.get("$type", "date") if isinstance(arg, dict) else "date"
            return lambda cur: "$$CLUSTER_TIME" if kind == "timestamp" else "$$NOW"
        if op == "$push":
            return self._push_builder(arg)
        if op == "$addToSet":
            items = arg["$each"] if isinstance(arg, dict) and "$each" in arg else [arg]
            return lambda cur: {
                "$reduce": {
                    "input": {"$literal": list(items)},
                    "initialValue": {"$ifNull": [cur, []]},
                    "in": {
                        "$cond": [
                            {"$in": ["$$this", "$$value"]},
                            "$$value",
                            {"$concatArrays": ["$$value", ["$$this"]]},
                        ]
                    },
                }
            }
        if op == "$pull":
            return lambda cur: {
                "$cond": [
                    {"$isArray": cur},
                    {"$filter": {"input": cur, "as": "item", "cond": {"$not": [self._pull_condition("$$item", arg)]}}},
                    cur,
                ]
            }
        if op == "$pullAll":
            return lambda cur: {
                "$cond": [
                    {"$isArray": cur},
                    {"$filter": {"input": cur, "as": "item", "cond": {"$not": [{"$in": ["$$item", {"$literal": list(arg)}]}]}}},
                    cur,
                ]
            }
        if op == "$pop":
            return self._pop_builder(arg)
        raise UnsupportedUpdateError(op, "unknown update operator")

    def _push_builder(self, arg: Any) -> ValueBuilder:
        if not (isinstance(arg, dict) and "$each" in arg):
            return lambda cur: {"$concatArrays": [{"$ifNull": [cur, []]}, [literal(arg)]]}
        unknown = set(arg) - {"$each", "$position", "$slice"}
        if unknown:
            raise UnsupportedUpdateError(sorted(unknown)[0], "$push modifier not supported")
        items = {"$literal": list(arg["$each"])}
        position = arg.get("$position")
        if position is not None and position < 0:
            raise UnsupportedUpdateError("$position", "negative positions are not supported")
        size_slice = arg.get("$slice")

        def build(cur: str) -> Expression:
            base = {"$ifNull": [cur, []]}
            if position is None:
                pushed: Expression = {"$concatArrays": [base, items]}
            else:
                pushed = {
                    "$concatArrays": [
                        {"$slice": [base, position]},
                        items,
                        {"$slice": [base, position, {"$max": [{"$size": base}, 1]}]},
                    ]
                }
            if size_slice is None:
                return pushed
            if size_slice == 0:
                return []
            return {"$slice": [pushed, size_slice]}

        return build

    def _pop_builder(self, arg: Any) -> ValueBuilder:
        if arg not in (1, -1):
            raise UnsupportedUpdateError("$pop", "argument must be 1 or -1")

        def build(cur: str) -> Expression:
            size = {"$size": cur}
            kept = (
                {"$slice": [cur, {"$subtract": [size, 1]}]}
                if arg == 1
                else {"$slice": [cur, 1, {"$subtract": [size, 1]}]}
            )
            return {
                "$cond": [
                    {"$isArray": cur},
                    {"$cond": [{"$lte": [size, 1]}, [], kept]},
                    cur,
                ]
            }

        return build

    def translate(self, update: dict[str, Any]) -> list[dict[str, Any]]:
        stages: list[dict[str, Any]] = []
        for op, document in update.items():
            if not isinstance(document, dict):
                raise UnsupportedUpdateError(op, "operator argument must be a document")

            if op == "$rename":
                for source, target in document.items():
                    if FieldPath.parse(source).has_positional() or FieldPath.parse(target).has_positional():
                        raise UnsupportedUpdateError("$rename", "positional paths cannot be renamed")
                    stages.append({"$set": {target: FieldPath.parse(source).ref}})
                    stages.append({"$unset": [source]})
                continue

            plain: dict[str, Expression] = {}
            removed: list[str] = []
            for key, arg in document.items():
                path = FieldPath.parse(key)
                build = self.value_builder(op, arg)
                if op == "$unset" and not path.has_positional():
                    removed.append(key)
                    continue
                target, expression = self.assign(path, build)
                if path.has_positional():
                    stages.append({"$set": {target: expression}})
                else:
                    plain[target] = expression
            if plain:
                stages.append({"$set": plain})
            if removed:
                stages.append({"$unset": removed})
        return stages


def replacement_to_pipeline(
    replacement: dict[str, Any],
    preserve: list[FieldPath] | tuple[FieldPath, ...] = (),
    stash: tuple[str, list[str]] | None = None,
) -> list[dict[str, Any]]:
    """Rewrite a replacement document as a pipeline.

    Top-level paths listed in ``preserve`` keep their stored value unless
    the replacement supplies them, so shadow-info records survive.

    Args:
        replacement: The new document, without operators.
        preserve: Paths carried over from the stored document.
        stash: ``(key, names)``: the stored values of the top-level fields
            ``names`` are kept under ``key`` so later stages can still read
            them. The caller removes ``key``.
    """
    kept: dict[str, Any] = {"_id": "$_id"}
    for path in preserve:
        if len(path) == 1 and path.name not in replacement:
            kept[path.name] = path.ref
    if stash is not None:
        key, names = stash
        kept[key] = {name: f"${name}" for name in names}
    return [{"$replaceWith": {"$mergeObjects": [kept, {"$literal": replacement}]}}]


def update_to_pipeline(
    filter: dict[str, Any] | None,
    update: dict[str, Any] | list[dict[str, Any]],
    array_filters: list[dict[str, Any]] | None = None,
) -> list[dict[str, Any]]:
    """Convert an update into an equivalent list of update-pipeline stages.

    Args:
        filter: The write's filter; supplies the conditions of ``$`` segments.
        update: Object-style update, replacement document, or pipeline.
        array_filters: The write's array filters; supply ``$[id]`` conditions.

    Returns:
        A new list of stages. Pipelines are copied, never reordered.

    Raises:
        UnsupportedUpdateError: If an operator or condition has no pipeline form.
    """
    if isinstance(update, list):
        return list(update)
    if not is_operator_update(update):
        return replacement_to_pipeline(update)
    return _Translator(filter, array_filters).translate(update)
