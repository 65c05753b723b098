from typing import Any, List, Optional, Sequence
from loguru import logger

from ..config import FETCH_PAGE_SIZE
from .store import Filter, Row, TableStore, eq


async def fetch_all(
    store: TableStore,
    table: str,
    filter_column: Optional[str],
    filter_value: Any,
    columns: Optional[Sequence[str]] = None,
    *,
    filters: Sequence[Filter] = (),
    page_size: int = FETCH_PAGE_SIZE,
) -> List[Row]:
    """
    Read every row of `table` matching `filter_column == filter_value` (plus
    any extra `filters`), one ranged page at a time.

    The store caps how many rows one select may return, so a single query is
    never enough for large tables. Pages are ordered by primary key, which
    keeps paging deterministic; fetching stops at the first short or empty
    page.
    """
    if page_size <= 0:
        raise ValueError("page_size must be positive")

    # A page larger than the store's cap would look like a short final page
    cap = getattr(store, "max_rows", None)
    if cap:
        page_size = min(page_size, cap)

    all_filters = list(filters)
    if filter_column is not None:
        all_filters.insert(0, eq(filter_column, filter_value))

    rows: List[Row] = []
    offset = 0
    while True:
        page = await store.select(
            table,
            columns=columns,
            filters=all_filters,
            offset=offset,
            limit=page_size,
        )
        rows.extend(page)
        if len(page) < page_size:
            break
        offset += page_size

    logger.debug(f"Fetched {len(rows)} rows from {table} ({filter_column}={filter_value!r})")
    return rows
