"""Table store used by the job processor.

The processor only needs a row-oriented store with three capabilities:
paged selects with simple filters, update-by-primary-key and upsert with an
explicit conflict key. ``TableStore`` is that contract; ``SqlTableStore``
implements it on top of the service's SQLAlchemy database.

Like the hosted store the processor was written against, ``SqlTableStore``
caps every select at ``STORE_MAX_ROWS`` rows no matter what limit the caller
asks for. Callers that need every row must page (see ``fetcher.fetch_all``).
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import sqlalchemy as sa
from sqlalchemy import MetaData, Table
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from loguru import logger

from .. import database
from ..config import STORE_MAX_ROWS
from ..errors import StoreError

Row = Dict[str, Any]

_OPS = {"eq", "neq", "gt", "gte", "lt", "lte", "in", "is_null"}


@dataclass(frozen=True)
class Filter:
    column: str
    op: str = "eq"
    value: Any = None

    def __post_init__(self):
        if self.op not in _OPS:
            raise ValueError(f"Unsupported filter op '{self.op}'")


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


class TableStore(Protocol):
    async def select(
        self,
        table: str,
        columns: Optional[Sequence[str]] = None,
        filters: Sequence[Filter] = (),
        order_by: Optional[Sequence[str]] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Row]: ...

    async def get(self, table: str, key: Any) -> Optional[Row]: ...

    async def update(
        self,
        table: str,
        key: Any,
        values: Row,
        expected: Optional[Row] = None,
    ) -> bool: ...

    async def upsert(self, table: str, row: Row, on_conflict: Sequence[str]) -> None: ...


class SqlTableStore:
    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        metadata: Optional[MetaData] = None,
        max_rows: Optional[int] = STORE_MAX_ROWS,
    ):
        self._session_factory = session_factory
        self._metadata = metadata if metadata is not None else database.Base.metadata
        self.max_rows = max_rows

    # --- helpers ---

    def _session(self) -> Session:
        # Resolved lazily so tests can swap database.SessionLocal
        factory = self._session_factory or database.SessionLocal
        return factory()

    def _table(self, name: str) -> Table:
        try:
            return self._metadata.tables[name]
        except KeyError:
            raise StoreError(f"Unknown table '{name}'") from None

    @staticmethod
    def _pk(table: Table):
        pk = list(table.primary_key.columns)
        if len(pk) != 1:
            raise StoreError(f"Table '{table.name}' needs a single-column primary key")
        return pk[0]

    @staticmethod
    def _clause(table: Table, f: Filter):
        col = table.c[f.column]
        if f.op == "eq":
            return col == f.value
        if f.op == "neq":
            return col != f.value
        if f.op == "gt":
            return col > f.value
        if f.op == "gte":
            return col >= f.value
        if f.op == "lt":
            return col < f.value
        if f.op == "lte":
            return col <= f.value
        if f.op == "in":
            return col.in_(list(f.value))
        return col.is_(None) if f.value in (None, True) else col.is_not(None)

    def _run(self, fn: Callable[[Session], Any]) -> Any:
        session = self._session()
        try:
            result = fn(session)
            session.commit()
            return result
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreError(str(e)) from e
        finally:
            session.close()

    async def _call(self, fn: Callable[[Session], Any]) -> Any:
        return await asyncio.to_thread(self._run, fn)

    # --- TableStore ---

    async def select(self, table, columns=None, filters=(), order_by=None, offset=0, limit=None):
        t = self._table(table)
        try:
            cols = [t.c[c] for c in columns] if columns else [t]
            clauses = [self._clause(t, f) for f in filters]
            order_cols = [t.c[c] for c in order_by] if order_by else list(t.primary_key.columns)
        except KeyError as e:
            raise StoreError(f"Unknown column {e} on '{table}'") from None

        if self.max_rows:
            limit = min(limit, self.max_rows) if limit else self.max_rows

        stmt = sa.select(*cols).where(*clauses).order_by(*order_cols).offset(offset)
        if limit:
            stmt = stmt.limit(limit)

        def op(session: Session) -> List[Row]:
            return [dict(r) for r in session.execute(stmt).mappings().all()]

        return await self._call(op)

    async def get(self, table, key):
        t = self._table(table)
        stmt = sa.select(t).where(self._pk(t) == key)

        def op(session: Session) -> Optional[Row]:
            row = session.execute(stmt).mappings().first()
            return dict(row) if row is not None else None

        return await self._call(op)

    async def update(self, table, key, values, expected=None):
        t = self._table(table)
        clauses = [self._pk(t) == key]
        for column, value in (expected or {}).items():
            clauses.append(t.c[column] == value)
        stmt = sa.update(t).where(*clauses).values(**values)

        def op(session: Session) -> bool:
            return session.execute(stmt).rowcount > 0

        return await self._call(op)

    async def upsert(self, table, row, on_conflict):
        t = self._table(table)
        pk_name = self._pk(t).name
        keep = set(on_conflict) | {pk_name, "created_at"}
        set_cols = [c for c in row if c not in keep]

        def op(session: Session) -> None:
            dialect = session.get_bind().dialect.name
            if dialect == "sqlite":
                insert = sqlite.insert
            elif dialect == "postgresql":
                insert = postgresql.insert
            else:
                _upsert_portable(session, t, row, on_conflict, set_cols)
                return

            stmt = insert(t).values(**row)
            if set_cols:
                stmt = stmt.on_conflict_do_update(
                    index_elements=list(on_conflict),
                    set_={c: stmt.excluded[c] for c in set_cols},
                )
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=list(on_conflict))
            session.execute(stmt)

        await self._call(op)


def _upsert_portable(session: Session, t: Table, row: Row, on_conflict: Sequence[str], set_cols: List[str]) -> None:
    """Select-then-write fallback for dialects without ON CONFLICT."""
    logger.debug(f"Portable upsert into {t.name}")
    match = [t.c[c] == row[c] for c in on_conflict]
    existing = session.execute(sa.select(t).where(*match)).first()
    if existing is None:
        session.execute(sa.insert(t).values(**row))
    elif set_cols:
        session.execute(sa.update(t).where(*match).values(**{c: row[c] for c in set_cols}))
