import re
from uuid import uuid4

# Only a fence that wraps the whole answer; fences inside JSON strings are content
_FENCE_OPEN_RE = re.compile(r"\A```(?:json)?[ \t]*\n?")
_FENCE_CLOSE_RE = re.compile(r"\n?```\Z")

def gen_uuid():
    return str(uuid4())

def strip_code_fences(text: str) -> str:
    """
    Remove markdown code fences (```json ... ```) that chat models like to
    wrap JSON answers in.
    """
    text = (text or "").strip()
    if not text.startswith("```"):
        return text
    text = _FENCE_OPEN_RE.sub("", text, count=1)
    return _FENCE_CLOSE_RE.sub("", text, count=1).strip()

def progress_percent(processed: int, total: int) -> int:
    if total <= 0:
        return 0
    return round((processed / total) * 100)

def truncate_to_words(text: str, max_words: int = 10) -> str:
    """
    Truncates a string to a maximum number of words, adding an ellipsis if truncated.
    """
    words = text.split()
    if len(words) > max_words:
        return " ".join(words[:max_words]) + " ..."
    return text
