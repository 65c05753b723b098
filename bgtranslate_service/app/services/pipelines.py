"""Content pipelines: where each job_type reads its source text and writes
its translations.

A job_type maps to one or more ``ContentSource`` objects processed in a
fixed order (CMS: sections, then items; training: modules, then lessons).
All sources of a job share one candidate list, so ``total_keys`` and the
resume cursor span the whole job.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..config import BASE_LANGUAGE
from ..errors import UnsupportedJobType
from ..models.models import JobMode, JobType
from .fetcher import fetch_all
from .store import Filter, Row, TableStore, eq

CELL_TEXT_FIELDS = ("content", "button_text")


@dataclass(frozen=True)
class Candidate:
    kind: str
    ref: str
    fields: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def identity(self) -> List[str]:
        return [self.kind, self.ref]


def has_text(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


def cells_have_text(cells: Any) -> bool:
    if not isinstance(cells, list):
        return False
    return any(
        isinstance(cell, dict) and any(has_text(cell.get(f)) for f in CELL_TEXT_FIELDS)
        for cell in cells
    )


class ContentSource:
    name: str = ""
    # "map": flat key -> string object; "array": list of indexed entries
    payload_shape: str = "array"
    text_fields: Tuple[str, ...] = ()
    has_cells: bool = False

    async def fetch_source(self, store: TableStore, job: Row) -> Dict[str, Candidate]:
        """All source-language records in scope, keyed by ref, in fetch order."""
        raise NotImplementedError

    async def fetch_existing(self, store: TableStore, job: Row) -> set:
        """Refs that already have a usable target-language translation."""
        raise NotImplementedError

    async def write(self, store: TableStore, candidate: Candidate, translated: Dict[str, Any], target_language: str) -> None:
        raise NotImplementedError

    async def select_candidates(self, store: TableStore, job: Row) -> List[Candidate]:
        source = await self.fetch_source(store, job)
        if _mode(job) == JobMode.all:
            return list(source.values())
        existing = await self.fetch_existing(store, job)
        return [c for ref, c in source.items() if ref not in existing]


def _mode(job: Row) -> JobMode:
    return JobMode(job.get("mode") or JobMode.missing)


class I18nSource(ContentSource):
    name = "i18n_translations"
    payload_shape = "map"
    text_fields = ("value",)

    @staticmethod
    def ref_for(row: Row) -> str:
        # JSON pair: namespaces and keys may themselves contain ":" or "."
        return json.dumps([row["namespace"], row["key"]], ensure_ascii=False)

    def _scope_filters(self, job: Row) -> List[Filter]:
        return [eq("namespace", job["scope_id"])] if job.get("scope_id") else []

    async def fetch_source(self, store, job):
        rows = await fetch_all(
            store, self.name, "language_code", job["source_language"],
            columns=["id", "namespace", "key", "value"],
            filters=self._scope_filters(job),
        )
        out: Dict[str, Candidate] = {}
        for row in rows:
            ref = self.ref_for(row)
            out[ref] = Candidate(self.name, ref, {"namespace": row["namespace"], "key": row["key"], "value": row["value"]})
        return out

    async def fetch_existing(self, store, job):
        rows = await fetch_all(
            store, self.name, "language_code", job["target_language"],
            columns=["namespace", "key"],
            filters=self._scope_filters(job),
        )
        return {self.ref_for(row) for row in rows}

    async def write(self, store, candidate, translated, target_language):
        await store.upsert(
            self.name,
            {
                "language_code": target_language,
                "namespace": candidate.fields["namespace"],
                "key": candidate.fields["key"],
                "value": translated["value"],
                "updated_at": datetime.now(UTC),
            },
            on_conflict=("language_code", "namespace", "key"),
        )


class TableContentSource(ContentSource):
    """
    Base content table (written in BASE_LANGUAGE) with a sibling
    ``*_translations`` table keyed by (fk_column, language_code).
    """

    def __init__(
        self,
        base_table: str,
        translation_table: str,
        fk_column: str,
        text_fields: Sequence[str],
        scope_column: Optional[str] = None,
        active_column: Optional[str] = "is_active",
        has_cells: bool = False,
    ):
        self.name = base_table
        self.base_table = base_table
        self.translation_table = translation_table
        self.fk_column = fk_column
        self.text_fields = tuple(text_fields)
        self.scope_column = scope_column
        self.active_column = active_column
        self.has_cells = has_cells

    @property
    def content_columns(self) -> List[str]:
        return list(self.text_fields) + (["cells"] if self.has_cells else [])

    def _is_translatable(self, fields: Dict[str, Any]) -> bool:
        if any(has_text(fields.get(f)) for f in self.text_fields):
            return True
        return self.has_cells and cells_have_text(fields.get("cells"))

    async def _base_rows(self, store: TableStore, job: Row, columns: List[str]) -> List[Row]:
        scope = job.get("scope_id")
        filters = [eq(self.active_column, True)] if self.active_column else []
        return await fetch_all(
            store, self.base_table,
            self.scope_column if scope else None, scope,
            columns=columns,
            filters=filters,
        )

    async def fetch_source(self, store, job):
        if job["source_language"] == BASE_LANGUAGE:
            rows = await self._base_rows(store, job, ["id"] + self.content_columns)
            pairs = [(row["id"], row) for row in rows]
        else:
            # Source text lives in the translation table; the base table
            # still decides scope, activity and order.
            base = await self._base_rows(store, job, ["id"])
            translated = await fetch_all(
                store, self.translation_table, "language_code", job["source_language"],
                columns=[self.fk_column] + self.content_columns,
            )
            by_fk = {row[self.fk_column]: row for row in translated}
            pairs = [(row["id"], by_fk[row["id"]]) for row in base if row["id"] in by_fk]

        out: Dict[str, Candidate] = {}
        for ref, row in pairs:
            fields = {c: row.get(c) for c in self.content_columns}
            if self._is_translatable(fields):
                out[ref] = Candidate(self.name, ref, fields)
        return out

    async def fetch_existing(self, store, job):
        rows = await fetch_all(
            store, self.translation_table, "language_code", job["target_language"],
            columns=[self.fk_column] + list(self.text_fields),
        )
        return {
            row[self.fk_column]
            for row in rows
            if any(row.get(f) is not None for f in self.text_fields)
        }

    async def write(self, store, candidate, translated, target_language):
        row = {self.fk_column: candidate.ref, "language_code": target_language}
        for column in self.content_columns:
            row[column] = translated.get(column)
        row["updated_at"] = datetime.now(UTC)
        await store.upsert(self.translation_table, row, on_conflict=(self.fk_column, "language_code"))


PIPELINES: Dict[JobType, Tuple[ContentSource, ...]] = {
    JobType.i18n: (I18nSource(),),
    JobType.cms: (
        TableContentSource(
            "cms_sections", "cms_section_translations", "section_id",
            ("title", "description", "collapsible_header"), scope_column="page_id",
        ),
        TableContentSource(
            "cms_items", "cms_item_translations", "item_id",
            ("title", "description"), scope_column="page_id", has_cells=True,
        ),
    ),
    JobType.training: (
        TableContentSource(
            "training_modules", "training_module_translations", "module_id",
            ("title", "description"), scope_column="id",
        ),
        TableContentSource(
            "training_lessons", "training_lesson_translations", "lesson_id",
            ("title", "content", "media_alt_text"), scope_column="module_id",
        ),
    ),
    JobType.knowledge: (
        TableContentSource(
            "knowledge_resources", "knowledge_resource_translations", "resource_id",
            ("title", "description", "context_of_use"), active_column=None,
        ),
    ),
    JobType.healthy_knowledge: (
        TableContentSource(
            "healthy_knowledge", "healthy_knowledge_translations", "item_id",
            ("title", "description", "text_content"),
        ),
    ),
}


def get_pipeline(job_type: Any) -> Tuple[ContentSource, ...]:
    try:
        return PIPELINES[JobType(job_type)]
    except (ValueError, KeyError):
        raise UnsupportedJobType(f"Unsupported job_type '{job_type}'") from None


def source_by_name(pipeline: Sequence[ContentSource], name: str) -> ContentSource:
    for source in pipeline:
        if source.name == name:
            return source
    raise KeyError(name)
