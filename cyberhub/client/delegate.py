"""
Per-entity CRUD and aggregate operations.

A :class:`ModelDelegate` is bound to one :class:`~cyberhub.client.registry.ModelSpec`
and to the client (or transaction client) that owns it.  Each operation
validates its arguments first, then runs inside ``owner._operation()``,
which supplies the session and translates database errors.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

from pydantic import BaseModel, ValidationError
from sqlalchemy import and_, func, insert, select, true
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from cyberhub.client.errors import format_message, validation_error
from cyberhub.client.query import (
    AGGREGATE_KEYS,
    ArgumentError,
    apply_filter_ops,
    build_includes,
    build_order_by,
    build_update_values,
    build_where,
    check_fields,
    check_unique_where,
    loader_options,
    resolve_omit,
)
from cyberhub.client.registry import ModelSpec, spec_for_class
from cyberhub.client.schemas import AggregateResult, BatchPayload
from cyberhub.exceptions import ClientValidationError, RecordNotFoundError

if TYPE_CHECKING:
    from cyberhub.client.client import BaseClient

logger = logging.getLogger(__name__)

_AGGREGATE_FUNCS = {"_sum": func.sum, "_avg": func.avg, "_min": func.min, "_max": func.max}


@dataclass
class _Plan:
    where: Optional[ColumnElement] = None
    order_by: List[ColumnElement] = field(default_factory=list)
    includes: List[str] = field(default_factory=list)
    omit: Set[str] = field(default_factory=set)


class ModelDelegate:
    """Operations for one entity, e.g. ``client.computer``."""

    def __init__(self, owner: "BaseClient", spec: ModelSpec) -> None:
        self._owner = owner
        self._spec = spec
        self.name = spec.name

    def __repr__(self) -> str:
        return f"ModelDelegate({self.name!r})"

    # ── Validation helpers ─────────────────────────────

    @contextmanager
    def _checking(self, action: str) -> Iterator[None]:
        """Convert argument problems into ``ClientValidationError`` before any I/O."""
        try:
            yield
        except ArgumentError as exc:
            raise ClientValidationError(
                format_message(str(exc), self.name, action, self._owner._error_format)
            ) from exc
        except ValidationError as exc:
            raise validation_error(exc, self.name, action, self._owner._error_format) from exc

    def _parse(self, schema: type, data: Any) -> BaseModel:
        if isinstance(data, schema):
            return data
        if isinstance(data, BaseModel):
            data = data.model_dump(exclude_unset=True)
        return schema.model_validate(data)

    def _plan(
        self,
        where: Optional[Mapping[str, Any]] = None,
        order_by: Any = None,
        include: Optional[Mapping[str, bool]] = None,
        omit: Optional[Mapping[str, bool]] = None,
    ) -> _Plan:
        return _Plan(
            where=build_where(self._spec, where),
            order_by=build_order_by(self._spec, order_by),
            includes=build_includes(self._spec, include),
            omit=resolve_omit(self._spec, self._owner._global_omit, omit),
        )

    @staticmethod
    def _check_window(skip: Optional[int], take: Optional[int]) -> None:
        for label, value in (("skip", skip), ("take", take)):
            if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 0):
                raise ArgumentError(f"`{label}` must be a non-negative integer")

    def _not_found(self, action: str, cause: str) -> RecordNotFoundError:
        return RecordNotFoundError(
            format_message(
                f"An operation failed because it depends on one or more records that were required but not found. {cause}",
                self.name,
                action,
                self._owner._error_format,
            ),
            meta={"model": self.name, "cause": cause},
        )

    # ── Record building ────────────────────────────────

    def _create_values(self, payload: BaseModel) -> Dict[str, Any]:
        columns = self._spec.columns
        values = {}
        for name in payload.model_fields_set:
            value = getattr(payload, name)
            if value is None and columns[name].default is not None:
                continue
            values[name] = value
        return values

    def _record(self, spec: ModelSpec, obj: Any, includes: Sequence[str], omitted: Set[str]) -> BaseModel:
        data: Dict[str, Any] = {name: getattr(obj, name) for name in spec.columns}
        for name in includes:
            related_spec = spec_for_class(spec.relations[name].mapper.class_)
            related_omit = resolve_omit(related_spec, self._owner._global_omit, None)
            related = getattr(obj, name)
            if isinstance(related, list):
                data[name] = [self._record(related_spec, item, (), related_omit) for item in related]
            else:
                data[name] = None if related is None else self._record(related_spec, related, (), related_omit)
        record = spec.record.model_validate(data)
        if omitted:
            record = record.model_copy(update={name: None for name in omitted})
        return record

    def _to_record(self, obj: Any, plan: _Plan) -> BaseModel:
        return self._record(self._spec, obj, plan.includes, plan.omit)

    def _select(self, plan: _Plan):
        stmt = select(self._spec.model)
        if plan.where is not None:
            stmt = stmt.where(plan.where)
        if plan.order_by:
            stmt = stmt.order_by(*plan.order_by)
        if plan.includes:
            stmt = stmt.options(*loader_options(self._spec, plan.includes))
        return stmt.execution_options(populate_existing=True)

    async def _reload(self, session: AsyncSession, pk: str, plan: _Plan) -> BaseModel:
        model = self._spec.model
        stmt = self._select(_Plan(where=model.id == pk, includes=plan.includes))
        obj = (await session.execute(stmt)).scalars().one()
        return self._to_record(obj, plan)

    async def _find_pk(self, session: AsyncSession, where: Optional[ColumnElement]) -> Optional[str]:
        model = self._spec.model
        stmt = select(model.id)
        if where is not None:
            stmt = stmt.where(where)
        return (await session.execute(stmt.limit(1))).scalars().first()

    # ── Reads ──────────────────────────────────────────

    async def find_unique(
        self,
        where: Mapping[str, Any],
        include: Optional[Mapping[str, bool]] = None,
        omit: Optional[Mapping[str, bool]] = None,
    ) -> Optional[BaseModel]:
        """Fetch one record by ``id`` or another unique field.

        Returns:
            The record, or ``None`` when nothing matches.
        """
        with self._checking("find_unique"):
            check_unique_where(self._spec, where)
            plan = self._plan(where=where, include=include, omit=omit)
        async with self._owner._operation(self.name, "find_unique") as session:
            obj = (await session.execute(self._select(plan).limit(1))).scalars().first()
            return None if obj is None else self._to_record(obj, plan)

    async def find_unique_or_raise(
        self,
        where: Mapping[str, Any],
        include: Optional[Mapping[str, bool]] = None,
        omit: Optional[Mapping[str, bool]] = None,
    ) -> BaseModel:
        record = await self.find_unique(where, include=include, omit=omit)
        if record is None:
            raise self._not_found("find_unique_or_raise", f"No {self.name} found.")
        return record

    async def find_first(
        self,
        where: Optional[Mapping[str, Any]] = None,
        order_by: Any = None,
        skip: Optional[int] = None,
        include: Optional[Mapping[str, bool]] = None,
        omit: Optional[Mapping[str, bool]] = None,
    ) -> Optional[BaseModel]:
        with self._checking("find_first"):
            self._check_window(skip, None)
            plan = self._plan(where=where, order_by=order_by, include=include, omit=omit)
        async with self._owner._operation(self.name, "find_first") as session:
            stmt = self._select(plan)
            if skip:
                stmt = stmt.offset(skip)
            obj = (await session.execute(stmt.limit(1))).scalars().first()
            return None if obj is None else self._to_record(obj, plan)

    async def find_first_or_raise(
        self,
        where: Optional[Mapping[str, Any]] = None,
        order_by: Any = None,
        skip: Optional[int] = None,
        include: Optional[Mapping[str, bool]] = None,
        omit: Optional[Mapping[str, bool]] = None,
    ) -> BaseModel:
        record = await self.find_first(where, order_by=order_by, skip=skip, include=include, omit=omit)
        if record is None:
            raise self._not_found("find_first_or_raise", f"No {self.name} found.")
        return record

    async def find_many(
        self,
        where: Optional[Mapping[str, Any]] = None,
        order_by: Any = None,
        skip: Optional[int] = None,
        take: Optional[int] = None,
        distinct: Optional[Sequence[str]] = None,
        include: Optional[Mapping[str, bool]] = None,
        omit: Optional[Mapping[str, bool]] = None,
    ) -> List[BaseModel]:
        """List records.

        ``distinct`` keeps the first row for each combination of the named
        fields; it is applied before ``skip`` / ``take``.
        """
        with self._checking("find_many"):
            self._check_window(skip, take)
            distinct_fields = check_fields(self._spec, distinct, "distinct")
            plan = self._plan(where=where, order_by=order_by, include=include, omit=omit)
        async with self._owner._operation(self.name, "find_many") as session:
            stmt = self._select(plan)
            if not distinct_fields:
                if skip:
                    stmt = stmt.offset(skip)
                if take is not None:
                    stmt = stmt.limit(take)
            rows = list((await session.execute(stmt)).scalars().all())
            if distinct_fields:
                seen = set()
                unique_rows = []
                for obj in rows:
                    key = tuple(getattr(obj, name) for name in distinct_fields)
                    if key not in seen:
                        seen.add(key)
                        unique_rows.append(obj)
                start = skip or 0
                rows = unique_rows[start:] if take is None else unique_rows[start : start + take]
            return [self._to_record(obj, plan) for obj in rows]

    async def count(self, where: Optional[Mapping[str, Any]] = None) -> int:
        with self._checking("count"):
            clause = build_where(self._spec, where)
        async with self._owner._operation(self.name, "count") as session:
            stmt = select(func.count()).select_from(self._spec.model)
            if clause is not None:
                stmt = stmt.where(clause)
            return int((await session.execute(stmt)).scalar_one())

    # ── Writes ─────────────────────────────────────────

    async def create(
        self,
        data: Any,
        include: Optional[Mapping[str, bool]] = None,
        omit: Optional[Mapping[str, bool]] = None,
    ) -> BaseModel:
        with self._checking("create"):
            payload = self._parse(self._spec.create_input, data)
            plan = self._plan(include=include, omit=omit)
        async with self._owner._operation(self.name, "create") as session:
            obj = self._spec.model(**self._create_values(payload))
            session.add(obj)
            await session.flush()
            return await self._reload(session, obj.id, plan)

    async def create_many(self, data: Sequence[Any], skip_duplicates: bool = False) -> BatchPayload:
        """Insert several rows in one transaction.

        With ``skip_duplicates`` rows that hit a unique constraint are
        skipped instead of failing the batch.
        """
        with self._checking("create_many"):
            if isinstance(data, (str, bytes, Mapping)) or not isinstance(data, Sequence):
                raise ArgumentError("`data` must be a list")
            rows = [self._create_values(self._parse(self._spec.create_input, item)) for item in data]
        if not rows:
            return BatchPayload(count=0)
        async with self._owner._operation(self.name, "create_many") as session:
            model = self._spec.model
            count = 0
            if skip_duplicates:
                dialect = (await session.connection()).dialect.name
                if dialect == "sqlite":
                    insert_fn = sqlite.insert
                elif dialect == "postgresql":
                    insert_fn = postgresql.insert
                else:
                    raise ClientValidationError(
                        format_message(
                            f"skip_duplicates is not supported on {dialect}",
                            self.name,
                            "create_many",
                            self._owner._error_format,
                        )
                    )
                for row in rows:
                    result = await session.execute(insert_fn(model).values(**row).on_conflict_do_nothing())
                    count += max(result.rowcount or 0, 0)
            else:
                for row in rows:
                    await session.execute(insert(model).values(**row))
                    count += 1
            return BatchPayload(count=count)

    async def update(
        self,
        where: Mapping[str, Any],
        data: Any,
        include: Optional[Mapping[str, bool]] = None,
        omit: Optional[Mapping[str, bool]] = None,
    ) -> BaseModel:
        """Update one record found by a unique field.

        Raises:
            RecordNotFoundError: Nothing matches ``where``.
        """
        with self._checking("update"):
            check_unique_where(self._spec, where)
            values = build_update_values(self._spec, self._parse(self._spec.update_input, data))
            plan = self._plan(where=where, include=include, omit=omit)
        async with self._owner._operation(self.name, "update") as session:
            pk = await self._find_pk(session, plan.where)
            if pk is None:
                raise self._not_found("update", "Record to update not found.")
            await self._apply_update(session, pk, values)
            return await self._reload(session, pk, plan)

    async def _apply_update(self, session: AsyncSession, pk: str, values: Dict[str, Any]) -> None:
        if not values:
            return
        model = self._spec.model
        stmt = sa_update(model).where(model.id == pk).values(**values)
        await session.execute(stmt.execution_options(synchronize_session=False))

    async def update_many(self, where: Optional[Mapping[str, Any]], data: Any) -> BatchPayload:
        with self._checking("update_many"):
            values = build_update_values(self._spec, self._parse(self._spec.update_input, data))
            clause = build_where(self._spec, where)
        if not values:
            return BatchPayload(count=0)
        async with self._owner._operation(self.name, "update_many") as session:
            model = self._spec.model
            stmt = sa_update(model).where(clause if clause is not None else true()).values(**values)
            result = await session.execute(stmt.execution_options(synchronize_session=False))
            return BatchPayload(count=result.rowcount)

    async def upsert(
        self,
        where: Mapping[str, Any],
        create: Any,
        update: Any,
        include: Optional[Mapping[str, bool]] = None,
        omit: Optional[Mapping[str, bool]] = None,
    ) -> BaseModel:
        """Update the record matching ``where``, or create it from ``create``."""
        with self._checking("upsert"):
            check_unique_where(self._spec, where)
            create_payload = self._parse(self._spec.create_input, create)
            values = build_update_values(self._spec, self._parse(self._spec.update_input, update))
            plan = self._plan(where=where, include=include, omit=omit)
        async with self._owner._operation(self.name, "upsert") as session:
            pk = await self._find_pk(session, plan.where)
            if pk is None:
                obj = self._spec.model(**self._create_values(create_payload))
                session.add(obj)
                await session.flush()
                pk = obj.id
            else:
                await self._apply_update(session, pk, values)
            return await self._reload(session, pk, plan)

    async def delete(
        self,
        where: Mapping[str, Any],
        include: Optional[Mapping[str, bool]] = None,
        omit: Optional[Mapping[str, bool]] = None,
    ) -> BaseModel:
        """Delete one record and return it as it was.

        Raises:
            RecordNotFoundError: Nothing matches ``where``.
            ForeignKeyConstraintError: A required reference still points at it.
        """
        with self._checking("delete"):
            check_unique_where(self._spec, where)
            plan = self._plan(where=where, include=include, omit=omit)
        async with self._owner._operation(self.name, "delete") as session:
            obj = (await session.execute(self._select(plan).limit(1))).scalars().first()
            if obj is None:
                raise self._not_found("delete", "Record to delete does not exist.")
            record = self._to_record(obj, plan)
            model = self._spec.model
            await session.execute(
                sa_delete(model).where(model.id == obj.id).execution_options(synchronize_session=False)
            )
            session.expunge(obj)
            return record

    async def delete_many(self, where: Optional[Mapping[str, Any]] = None) -> BatchPayload:
        with self._checking("delete_many"):
            clause = build_where(self._spec, where)
        async with self._owner._operation(self.name, "delete_many") as session:
            model = self._spec.model
            stmt = sa_delete(model).where(clause if clause is not None else true())
            result = await session.execute(stmt.execution_options(synchronize_session=False))
            return BatchPayload(count=result.rowcount)

    # ── Aggregates ─────────────────────────────────────

    def _aggregate_exprs(
        self,
        count: bool,
        sections: Mapping[str, Optional[Sequence[str]]],
    ) -> Tuple[list, Dict[str, List[str]]]:
        columns = self._spec.columns
        exprs = []
        if count:
            exprs.append(func.count().label("_count"))
        requested: Dict[str, List[str]] = {}
        for key, fields in sections.items():
            names = check_fields(self._spec, fields, key.lstrip("_"), numeric=key in ("_sum", "_avg"))
            requested[key] = names
            for name in names:
                exprs.append(_AGGREGATE_FUNCS[key](columns[name]).label(f"{key}__{name}"))
        return exprs, requested

    @staticmethod
    def _aggregate_value(key: str, value: Any) -> Any:
        if value is not None and key == "_avg":
            return float(value)
        return value

    async def aggregate(
        self,
        where: Optional[Mapping[str, Any]] = None,
        count: bool = False,
        sum: Optional[Sequence[str]] = None,
        avg: Optional[Sequence[str]] = None,
        min: Optional[Sequence[str]] = None,
        max: Optional[Sequence[str]] = None,
    ) -> AggregateResult:
        """Compute count / sum / avg / min / max over the matching rows."""
        with self._checking("aggregate"):
            clause = build_where(self._spec, where)
            exprs, requested = self._aggregate_exprs(
                count, {"_sum": sum, "_avg": avg, "_min": min, "_max": max}
            )
            if not exprs:
                raise ArgumentError("aggregate needs at least one of count, sum, avg, min, max")
        async with self._owner._operation(self.name, "aggregate") as session:
            stmt = select(*exprs).select_from(self._spec.model)
            if clause is not None:
                stmt = stmt.where(clause)
            row = (await session.execute(stmt)).mappings().one()
        result: Dict[str, Any] = {"count": int(row["_count"]) if count else None}
        for key, names in requested.items():
            result[key.lstrip("_")] = {name: self._aggregate_value(key, row[f"{key}__{name}"]) for name in names}
        return AggregateResult(**result)

    async def group_by(
        self,
        by: Sequence[str],
        where: Optional[Mapping[str, Any]] = None,
        count: bool = False,
        sum: Optional[Sequence[str]] = None,
        avg: Optional[Sequence[str]] = None,
        min: Optional[Sequence[str]] = None,
        max: Optional[Sequence[str]] = None,
        order_by: Any = None,
        having: Optional[Mapping[str, Any]] = None,
        skip: Optional[int] = None,
        take: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Group rows by ``by`` and aggregate each group.

        ``having`` filters groups on a ``by`` field or on an aggregate, e.g.
        ``{"_count": {"gt": 1}}`` or ``{"_sum": {"total_cost": {"gte": 100}}}``.
        ``order_by`` accepts ``by`` fields, ``{"_count": "desc"}`` and
        ``{"_sum": {"field": "desc"}}``.

        Returns:
            One dict per group with the ``by`` values and ``_count`` /
            ``_sum`` / ``_avg`` / ``_min`` / ``_max`` sections as requested.
        """
        with self._checking("group_by"):
            by_fields = check_fields(self._spec, by, "by")
            if not by_fields:
                raise ArgumentError("group_by needs at least one field in `by`")
            self._check_window(skip, take)
            clause = build_where(self._spec, where)
            exprs, requested = self._aggregate_exprs(
                count, {"_sum": sum, "_avg": avg, "_min": min, "_max": max}
            )
            having_clause = self._build_having(by_fields, having)
            ordering = self._group_order(by_fields, order_by)
        columns = self._spec.columns
        async with self._owner._operation(self.name, "group_by") as session:
            stmt = select(*[columns[name] for name in by_fields], *exprs).select_from(self._spec.model)
            if clause is not None:
                stmt = stmt.where(clause)
            stmt = stmt.group_by(*[columns[name] for name in by_fields])
            if having_clause is not None:
                stmt = stmt.having(having_clause)
            if ordering:
                stmt = stmt.order_by(*ordering)
            if skip:
                stmt = stmt.offset(skip)
            if take is not None:
                stmt = stmt.limit(take)
            rows = (await session.execute(stmt)).mappings().all()
        groups = []
        for row in rows:
            group: Dict[str, Any] = {name: row[name] for name in by_fields}
            if count:
                group["_count"] = int(row["_count"])
            for key, names in requested.items():
                if names:
                    group[key] = {name: self._aggregate_value(key, row[f"{key}__{name}"]) for name in names}
            groups.append(group)
        return groups

    def _build_having(self, by_fields: Sequence[str], having: Optional[Mapping[str, Any]]) -> Optional[ColumnElement]:
        if not having:
            return None
        columns = self._spec.columns
        conditions = []
        for key, value in having.items():
            if key in by_fields:
                column = columns[key]
                ops = value if isinstance(value, Mapping) else {"equals": value}
                conditions.append(apply_filter_ops(column, ops, lambda item: item, key, column))
            elif key == "_count":
                ops = value if isinstance(value, Mapping) else {"equals": value}
                conditions.append(apply_filter_ops(func.count(), ops, lambda item: item, key))
            elif key in AGGREGATE_KEYS:
                if not isinstance(value, Mapping):
                    raise ArgumentError(f"`having.{key}` expects {{field: filter}}")
                for name, ops in value.items():
                    check_fields(self._spec, [name], f"having.{key}", numeric=key in ("_sum", "_avg"))
                    expr = _AGGREGATE_FUNCS[key](columns[name])
                    ops = ops if isinstance(ops, Mapping) else {"equals": ops}
                    conditions.append(apply_filter_ops(expr, ops, lambda item: item, f"{key}.{name}"))
            else:
                raise ArgumentError(f"`having.{key}` must be a `by` field or an aggregate")
        return and_(*conditions)

    def _group_order(self, by_fields: Sequence[str], order_by: Any) -> List[ColumnElement]:
        if order_by is None:
            return []
        items = [order_by] if isinstance(order_by, Mapping) else list(order_by)
        columns = self._spec.columns
        clauses = []
        for item in items:
            for key, direction in item.items():
                if key in by_fields:
                    expr, label = columns[key], key
                elif key == "_count":
                    expr, label = func.count(), key
                elif key in AGGREGATE_KEYS and isinstance(direction, Mapping) and len(direction) == 1:
                    (name, direction), = direction.items()
                    check_fields(self._spec, [name], f"order_by.{key}", numeric=key in ("_sum", "_avg"))
                    expr, label = _AGGREGATE_FUNCS[key](columns[name]), f"{key}.{name}"
                else:
                    raise ArgumentError(f"Cannot order groups by `{key}`")
                if direction not in ("asc", "desc"):
                    raise ArgumentError(f"Sort direction for `{label}` must be 'asc' or 'desc'")
                clauses.append(expr.asc() if direction == "asc" else expr.desc())
        return clauses
