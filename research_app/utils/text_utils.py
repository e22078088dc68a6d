import re


def collapse_whitespace(text: str) -> str:
    """
    Collapses every run of whitespace (including non-breaking spaces) to a single space.
    """
    if not text:
        return ""
    return re.sub(r"\s+", " ", text.replace("\xa0", " ")).strip()


def truncate(text: str, max_chars: int) -> str:
    """
    Cuts text to at most max_chars characters. A non-positive limit disables the cut.
    """
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[:max_chars]
