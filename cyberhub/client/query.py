"""
Compile the dict-based query arguments (where, order_by, include, omit,
numeric update operators, aggregate field lists) into SQLAlchemy constructs.

Everything here runs before any I/O.  Shape problems raise
:class:`ArgumentError`, which the delegate turns into a
``ClientValidationError`` naming the model and operation.
"""

from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from sqlalchemy import Column, Integer, String, and_, func, not_, or_, true
from sqlalchemy.orm import selectinload
from sqlalchemy.sql.elements import ColumnElement

from cyberhub.client.registry import ModelSpec
from cyberhub.client.schemas import NumberOperation
from cyberhub.db.types import ANY_NULL, DB_NULL, JSON_NULL, JsonPayload

LOGICAL_KEYS = ("AND", "OR", "NOT")
FILTER_OPS = (
    "equals",
    "not",
    "in",
    "not_in",
    "lt",
    "lte",
    "gt",
    "gte",
    "contains",
    "starts_with",
    "ends_with",
    "mode",
)
AGGREGATE_KEYS = ("_count", "_sum", "_avg", "_min", "_max")
_SENTINELS = (DB_NULL, JSON_NULL, ANY_NULL)


class ArgumentError(ValueError):
    """A query argument has the wrong shape."""


# ── Values ─────────────────────────────────────────────


def _is_json(column: Column) -> bool:
    return isinstance(column.type, JsonPayload)


def _coerce(column: Column, value: Any) -> Any:
    if any(value is sentinel for sentinel in _SENTINELS):
        if not _is_json(column):
            raise ArgumentError(f"`{column.key}` is not a JSON field; {value!r} is only valid for JSON fields")
        return value
    if value is None:
        return None
    enum_cls = getattr(column.type, "enum_class", None)
    if enum_cls is not None:
        try:
            return enum_cls(value)
        except ValueError:
            allowed = ", ".join(member.value for member in enum_cls)
            raise ArgumentError(f"Invalid value {value!r} for `{column.key}`. Expected one of: {allowed}") from None
    return value


def _equals(column: Column, value: Any) -> ColumnElement:
    value = _coerce(column, value)
    if value is None or value is DB_NULL:
        return column.is_(None)
    if value is ANY_NULL:
        return or_(column.is_(None), column == JSON_NULL)
    return column == value


def _text_value(column: Column, op: str, value: Any) -> str:
    if not isinstance(value, str):
        raise ArgumentError(f"`{column.key}.{op}` expects a string, got {type(value).__name__}")
    if not isinstance(column.type, String) or getattr(column.type, "enum_class", None) is not None:
        raise ArgumentError(f"`{op}` is not supported on `{column.key}`")
    return value


def _fold(column: Optional[Column], expr: Any, op: str, value: Any) -> Tuple[Any, Any]:
    """Lower-case both sides of a text comparison in insensitive mode."""
    if column is None:
        raise ArgumentError(f"`mode` is only supported on text fields, not with `{op}` here")
    return func.lower(expr), _text_value(column, op, value).lower()


def apply_filter_ops(
    expr: Any,
    ops: Mapping[str, Any],
    coerce: Callable[[Any], Any],
    label: str,
    column: Optional[Column] = None,
) -> ColumnElement:
    """Build the conjunction of ``{op: value}`` filters against ``expr``."""
    if not ops:
        raise ArgumentError(f"Empty filter for `{label}`")
    insensitive = ops.get("mode") == "insensitive"
    if "mode" in ops and ops["mode"] not in ("default", "insensitive"):
        raise ArgumentError(f"`{label}.mode` must be 'default' or 'insensitive'")
    conditions: List[ColumnElement] = []
    for op, value in ops.items():
        if op not in FILTER_OPS:
            raise ArgumentError(f"Unknown filter `{op}` on `{label}`. Available: {', '.join(FILTER_OPS)}")
        if op == "mode":
            continue
        if op == "equals":
            if insensitive and value is not None:
                target, needle = _fold(column, expr, op, value)
                conditions.append(target == needle)
            else:
                conditions.append(_equals(column, value) if column is not None else expr == coerce(value))
        elif op == "not":
            if isinstance(value, Mapping):
                nested = {"mode": ops["mode"], **value} if insensitive and "mode" not in value else value
                conditions.append(not_(apply_filter_ops(expr, nested, coerce, label, column)))
            elif value is None:
                conditions.append(expr.is_not(None))
            elif insensitive:
                target, needle = _fold(column, expr, op, value)
                conditions.append(target != needle)
            elif column is not None:
                # sentinels need the IS NULL handling of _equals
                conditions.append(not_(_equals(column, value)))
            else:
                conditions.append(expr != coerce(value))
        elif op in ("in", "not_in"):
            if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
                raise ArgumentError(f"`{label}.{op}` expects a list")
            target = expr
            if insensitive:
                folded = [_fold(column, expr, op, item) for item in value]
                values = [needle for _, needle in folded]
                target = func.lower(expr)
            else:
                values = [coerce(item) for item in value]
            conditions.append(target.in_(values) if op == "in" else target.not_in(values))
        elif op in ("lt", "lte", "gt", "gte"):
            value = coerce(value)
            if value is None:
                raise ArgumentError(f"`{label}.{op}` cannot compare against null")
            conditions.append(
                {"lt": expr < value, "lte": expr <= value, "gt": expr > value, "gte": expr >= value}[op]
            )
        else:
            text = _text_value(column, op, value) if column is not None else value
            target = func.lower(expr) if insensitive else expr
            needle = text.lower() if insensitive else text
            if op == "contains":
                conditions.append(target.contains(needle, autoescape=True))
            elif op == "starts_with":
                conditions.append(target.startswith(needle, autoescape=True))
            else:
                conditions.append(target.endswith(needle, autoescape=True))
    return and_(*conditions) if conditions else true()


# ── Where ──────────────────────────────────────────────


def build_where(spec: ModelSpec, where: Optional[Mapping[str, Any]]) -> Optional[ColumnElement]:
    """Compile a where mapping into a boolean clause (``None`` for no filter)."""
    if where is None:
        return None
    if not isinstance(where, Mapping):
        raise ArgumentError("`where` must be a mapping")
    columns = spec.columns
    conditions: List[ColumnElement] = []
    for key, value in where.items():
        if key in ("AND", "OR"):
            items = _as_list(value, key)
            clauses = [build_where(spec, item) for item in items]
            clauses = [clause for clause in clauses if clause is not None]
            if key == "AND":
                conditions.append(and_(true(), *clauses))
            else:
                conditions.append(or_(*clauses) if clauses else not_(true()))
        elif key == "NOT":
            items = value if isinstance(value, (list, tuple)) else [value]
            for item in items:
                clause = build_where(spec, item)
                if clause is not None:
                    conditions.append(not_(clause))
        elif key in columns:
            column = columns[key]
            if isinstance(value, Mapping):
                conditions.append(
                    apply_filter_ops(column, value, lambda item, c=column: _coerce(c, item), key, column)
                )
            else:
                conditions.append(_equals(column, value))
        else:
            raise ArgumentError(f"Unknown field `{key}` in where for model `{spec.name}`")
    if not conditions:
        return None
    return and_(*conditions)


def _as_list(value: Any, key: str) -> List[Mapping[str, Any]]:
    if isinstance(value, Mapping):
        return [value]
    if isinstance(value, (list, tuple)):
        return list(value)
    raise ArgumentError(f"`{key}` expects a mapping or a list of mappings")


def check_unique_where(spec: ModelSpec, where: Mapping[str, Any]) -> None:
    """``find_unique``-style lookups must name a unique field with a plain value."""
    if not isinstance(where, Mapping) or not where:
        raise ArgumentError(f"Expected a where on one of: {', '.join(spec.unique_fields)}")
    unique = [key for key in where if key in spec.unique_fields]
    if not unique:
        raise ArgumentError(
            f"Argument `where` of type {spec.record.__name__[:-6]}WhereUniqueInput needs at least one of "
            f"{', '.join('`' + name + '`' for name in spec.unique_fields)}"
        )
    for key in unique:
        if isinstance(where[key], Mapping) or where[key] is None:
            raise ArgumentError(f"Unique field `{key}` needs a plain value")


# ── Ordering, distinct, fields ─────────────────────────


def _direction(value: Any, label: str) -> str:
    if value not in ("asc", "desc"):
        raise ArgumentError(f"Sort direction for `{label}` must be 'asc' or 'desc', got {value!r}")
    return value


def build_order_by(spec: ModelSpec, order_by: Any) -> List[ColumnElement]:
    if order_by is None:
        return []
    items = _as_list(order_by, "order_by")
    columns = spec.columns
    clauses = []
    for item in items:
        for key, direction in item.items():
            if key not in columns:
                raise ArgumentError(f"Unknown field `{key}` in order_by for model `{spec.name}`")
            column = columns[key]
            clauses.append(column.asc() if _direction(direction, key) == "asc" else column.desc())
    return clauses


def check_fields(spec: ModelSpec, fields: Optional[Sequence[str]], label: str, numeric: bool = False) -> List[str]:
    """Validate a list of scalar field names."""
    if not fields:
        return []
    if isinstance(fields, str):
        raise ArgumentError(f"`{label}` expects a list of field names")
    columns = spec.columns
    for name in fields:
        if name not in columns:
            raise ArgumentError(f"Unknown field `{name}` in {label} for model `{spec.name}`")
        if numeric and not isinstance(columns[name].type, Integer):
            raise ArgumentError(f"`{label}` needs numeric fields; `{name}` is not numeric")
        if _is_json(columns[name]):
            raise ArgumentError(f"`{name}` cannot be used in {label}")
    return list(fields)


# ── Include / omit ─────────────────────────────────────


def build_includes(spec: ModelSpec, include: Optional[Mapping[str, bool]]) -> List[str]:
    """Return the relation names to eager-load."""
    if not include:
        return []
    relations = spec.relations
    names = []
    for name, wanted in include.items():
        if name not in relations:
            raise ArgumentError(
                f"Unknown relation `{name}` in include for model `{spec.name}`. "
                f"Available: {', '.join(sorted(relations)) or '(none)'}"
            )
        if not isinstance(wanted, bool):
            raise ArgumentError(f"`include.{name}` must be a boolean")
        if wanted:
            names.append(name)
    return names


def loader_options(spec: ModelSpec, relation_names: Sequence[str]) -> list:
    return [selectinload(getattr(spec.model, name)) for name in relation_names]


def resolve_omit(
    spec: ModelSpec,
    global_omit: Mapping[str, Mapping[str, bool]],
    omit: Optional[Mapping[str, bool]],
) -> Set[str]:
    """Merge the client-wide omit map for ``spec`` with a per-call override."""
    merged: Dict[str, bool] = dict(global_omit.get(spec.name, {}))
    if omit:
        columns = spec.columns
        for name, flag in omit.items():
            if name not in columns:
                raise ArgumentError(f"Unknown field `{name}` in omit for model `{spec.name}`")
            if not isinstance(flag, bool):
                raise ArgumentError(f"`omit.{name}` must be a boolean")
            merged[name] = flag
    return {name for name, flag in merged.items() if flag}


# ── Update values ──────────────────────────────────────


def build_update_values(spec: ModelSpec, data: Any) -> Dict[str, Any]:
    """Turn a validated update input into ``UPDATE ... SET`` values.

    Numeric operators become SQL expressions so they apply atomically.
    """
    columns = spec.columns
    values: Dict[str, Any] = {}
    for name in data.model_fields_set:
        value = getattr(data, name)
        column = columns[name]
        if isinstance(value, NumberOperation):
            if value.set is not None:
                values[name] = value.set
            elif value.increment is not None:
                values[name] = column + value.increment
            elif value.decrement is not None:
                values[name] = column - value.decrement
            elif value.multiply is not None:
                values[name] = column * value.multiply
            else:
                values[name] = column // value.divide
        else:
            values[name] = value
    return values
