import re

_WHITESPACE = re.compile(r"\s+")
_NON_WORD = re.compile(r"[^\w\s]")

MIN_KEYWORD_LENGTH = 3
MAX_KEYWORD_LENGTH = 19

STOP_WORDS = frozenset({
    "the", "and", "for", "are", "but", "not", "you", "all", "can", "had",
    "her", "was", "one", "our", "out", "day", "get", "has", "him", "his",
    "how", "its", "may", "new", "now", "old", "see", "two", "who", "boy",
    "did", "she", "use", "way", "will", "with",
})


def normalize_description(text: str | None) -> str:
    """Lower-case, trim and collapse whitespace. Empty input becomes 'n/a'."""
    if not text or not text.strip():
        return "n/a"
    return _WHITESPACE.sub(" ", text.strip().lower())


def extract_keywords(description: str | None) -> list[str]:
    if not description:
        return []
    words = _NON_WORD.sub(" ", description.lower()).split()
    keywords: list[str] = []
    seen = set()
    for word in words:
        if not MIN_KEYWORD_LENGTH <= len(word) <= MAX_KEYWORD_LENGTH:
            continue
        if word in STOP_WORDS or word in seen:
            continue
        keywords.append(word)
        seen.add(word)
    return keywords


def parse_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    parts = [part.strip() for part in raw.split(",")]
    items: list[str] = []
    seen = set()
    for part in parts:
        if part and part not in seen:
            items.append(part)
            seen.add(part)
    return items
