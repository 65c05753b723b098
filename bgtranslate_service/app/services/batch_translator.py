"""Batch translation through the AI service.

One AI request translates a whole batch. The request carries a structured
JSON payload and the answer is expected back in the same shape:

- i18n ("map" shape): ``{"0:namespace.key": "text", ...}``; the leading
  batch position keeps keys unique when namespaces or keys contain dots
- everything else ("array" shape): ``[{"i": 0, "title": ..., "cells": [{"c": 0,
  "content": ..., "button_text": ...}]}, ...]`` where ``i`` is the record's
  position in the batch and ``c`` the cell's position in the record.

Only non-empty text goes into the payload. Whatever the model sends back is
merged onto a copy of the source record: a field the model dropped or
mangled keeps its source value, and non-text cell attributes are never
touched. A record the model skipped entirely comes back as ``None``.
"""
import copy
import json
import re
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from ..errors import TranslationParseError
from ..models.languages import get_language_label
from ..utils import strip_code_fences, truncate_to_words
from .ai_client import AIClient
from .pipelines import CELL_TEXT_FIELDS, Candidate, ContentSource, has_text

_MAP_PROMPT = """You are a professional translator for UI/UX applications. Translate the following i18n keys from {source} to {target}.
Rules:
- Keep the translation natural and appropriate for UI elements
- Preserve any placeholders like {{name}}, {{{{count}}}}, etc.
- Preserve HTML tags and markdown exactly as they are
- Keep technical terms if they're commonly used in the target language
- For short labels, keep them concise
- Return ONLY a valid JSON object with the same keys but translated values
- Do not add any explanation or markdown"""

_ARRAY_PROMPT = """You are a professional translator for website and course content. Translate the text fields of the following records from {source} to {target}.
Rules:
- Translate only these fields: {fields}
- Do not translate or change "i" and "c"; they identify records and cells
- Preserve any placeholders like {{name}}, {{{{count}}}}, etc.
- Preserve HTML tags, attributes, URLs and markdown exactly as they are
- Keep technical terms if they're commonly used in the target language
- Return ONLY a valid JSON array with the same length and the same structure
- Do not add any explanation or markdown"""

_JSON_SPAN_RE = re.compile(r"(\[.*\]|\{.*\})", re.DOTALL)


def parse_json_response(content: str) -> Any:
    """
    Parse a model answer as JSON after stripping markdown fences. Falls back
    to the outermost [...] or {...} span when the model wrapped the JSON in
    prose. Raises TranslationParseError if nothing parses.
    """
    text = strip_code_fences(content)
    try:
        return json.loads(text)
    except ValueError:
        pass

    match = _JSON_SPAN_RE.search(text)
    if match:
        try:
            return json.loads(match.group(1))
        except ValueError:
            pass

    raise TranslationParseError(f"Failed to parse AI response: {truncate_to_words(text, 30)!r}")


def map_key(index: int, candidate: Candidate) -> str:
    return f"{index}:{candidate.fields['namespace']}.{candidate.fields['key']}"


def build_map_payload(records: Sequence[Candidate]) -> Dict[str, str]:
    return {map_key(i, r): r.fields["value"] for i, r in enumerate(records)}


def build_array_payload(source: ContentSource, records: Sequence[Candidate]) -> List[Dict[str, Any]]:
    payload = []
    for i, record in enumerate(records):
        entry: Dict[str, Any] = {"i": i}
        for f in source.text_fields:
            if has_text(record.fields.get(f)):
                entry[f] = record.fields[f]
        if source.has_cells and isinstance(record.fields.get("cells"), list):
            cells = []
            for c, cell in enumerate(record.fields["cells"]):
                if not isinstance(cell, dict):
                    continue
                texts = {k: cell[k] for k in CELL_TEXT_FIELDS if has_text(cell.get(k))}
                if texts:
                    cells.append({"c": c, **texts})
            if cells:
                entry["cells"] = cells
        payload.append(entry)
    return payload


def merge_cells(source_cells: Any, translated_cells: Any) -> Any:
    """Copy of source_cells with translated content/button_text applied in place."""
    if not isinstance(source_cells, list):
        return source_cells
    merged = copy.deepcopy(source_cells)
    if not isinstance(translated_cells, list):
        return merged
    for entry in translated_cells:
        if not isinstance(entry, dict):
            continue
        c = entry.get("c")
        if not isinstance(c, int) or not 0 <= c < len(merged) or not isinstance(merged[c], dict):
            continue
        for k in CELL_TEXT_FIELDS:
            if has_text(merged[c].get(k)) and has_text(entry.get(k)):
                merged[c][k] = entry[k]
    return merged


def apply_map_response(records: Sequence[Candidate], parsed: Any) -> List[Optional[Dict[str, Any]]]:
    if not isinstance(parsed, dict):
        raise TranslationParseError(f"Expected a JSON object, got {type(parsed).__name__}")
    results: List[Optional[Dict[str, Any]]] = []
    for i, record in enumerate(records):
        key = map_key(i, record)
        if key not in parsed:
            results.append(None)
            continue
        value = parsed[key]
        results.append({"value": value if has_text(value) else record.fields["value"]})
    return results


def _entries_by_index(parsed: Any, count: int) -> Dict[int, Dict[str, Any]]:
    if isinstance(parsed, dict):
        # Some models wrap the array: {"items": [...]}
        lists = [v for v in parsed.values() if isinstance(v, list)]
        if len(lists) != 1:
            raise TranslationParseError("Expected a JSON array of records")
        parsed = lists[0]
    if not isinstance(parsed, list):
        raise TranslationParseError(f"Expected a JSON array, got {type(parsed).__name__}")

    entries = [e for e in parsed if isinstance(e, dict)]
    by_index: Dict[int, Dict[str, Any]] = {}
    for pos, entry in enumerate(entries):
        i = entry.get("i")
        if isinstance(i, str) and i.strip().isdigit():
            i = int(i)
        if isinstance(i, int) and 0 <= i < count:
            by_index.setdefault(i, entry)
        elif i is None and len(entries) == count:
            by_index.setdefault(pos, entry)
    return by_index


def apply_array_response(source: ContentSource, records: Sequence[Candidate], parsed: Any) -> List[Optional[Dict[str, Any]]]:
    by_index = _entries_by_index(parsed, len(records))
    results: List[Optional[Dict[str, Any]]] = []
    for i, record in enumerate(records):
        entry = by_index.get(i)
        if entry is None:
            results.append(None)
            continue
        translated: Dict[str, Any] = {}
        for f in source.text_fields:
            original = record.fields.get(f)
            value = entry.get(f)
            translated[f] = value if has_text(original) and has_text(value) else original
        if source.has_cells:
            translated["cells"] = merge_cells(record.fields.get("cells"), entry.get("cells"))
        results.append(translated)
    return results


class BatchTranslator:
    def __init__(self, client: AIClient):
        self.client = client

    def system_prompt(self, source: ContentSource, source_lang: str, target_lang: str) -> str:
        labels = {"source": get_language_label(source_lang), "target": get_language_label(target_lang)}
        if source.payload_shape == "map":
            return _MAP_PROMPT.format(**labels)
        fields = list(source.text_fields)
        if source.has_cells:
            fields += [f"cells[].{f}" for f in CELL_TEXT_FIELDS]
        return _ARRAY_PROMPT.format(fields=", ".join(fields), **labels)

    async def translate_batch(
        self,
        source: ContentSource,
        records: Sequence[Candidate],
        source_lang: str,
        target_lang: str,
    ) -> List[Optional[Dict[str, Any]]]:
        """
        Translate one batch. Returns one entry per record, in order; None
        marks a record the model left out.

        Raises TranslationParseError when the answer is not usable at all,
        and lets AI client errors propagate (the caller decides which are
        fatal).
        """
        if not records:
            return []

        if source.payload_shape == "map":
            payload: Any = build_map_payload(records)
            user_prompt = f"Translate these keys:\n{json.dumps(payload, ensure_ascii=False, indent=2)}"
        else:
            payload = build_array_payload(source, records)
            user_prompt = f"Translate these records:\n{json.dumps(payload, ensure_ascii=False, indent=2)}"

        content = await self.client.complete(self.system_prompt(source, source_lang, target_lang), user_prompt)
        parsed = parse_json_response(content)

        if source.payload_shape == "map":
            results = apply_map_response(records, parsed)
        else:
            results = apply_array_response(source, records, parsed)

        missing = sum(1 for r in results if r is None)
        if missing:
            logger.warning(f"AI response left out {missing}/{len(records)} {source.name} records")
        return results
