import re
from enum import Enum
from typing import Optional, Dict

class KnownLanguage(str, Enum):
    PL = "pl"
    DE = "de"
    EN = "en"
    IT = "it"
    FR = "fr"
    ES = "es"

# English names are used in prompts; the model handles them better than codes
_LABELS: Dict[KnownLanguage, str] = {
    KnownLanguage.PL: "Polish",
    KnownLanguage.DE: "German",
    KnownLanguage.EN: "English",
    KnownLanguage.IT: "Italian",
    KnownLanguage.FR: "French",
    KnownLanguage.ES: "Spanish",
}

# ll or ll-RR / ll_RR
_CODE_RE = re.compile(r"^[a-z]{2,3}(?:[-_][a-z0-9]{2,4})?$")

def normalize_language_code(code: str) -> Optional[str]:
    """
    Lower-case and validate a language code. Returns None if it does not
    look like a language code at all.
    """
    if not code:
        return None
    code = code.strip().lower()
    if not _CODE_RE.match(code):
        return None
    return code

def get_language_label(code: str) -> str:
    """
    Get the English name for a language code. Unknown codes are returned
    as-is so prompts still carry something meaningful.
    """
    try:
        lang = KnownLanguage(code.lower())
        return _LABELS[lang]
    except ValueError:
        return code
