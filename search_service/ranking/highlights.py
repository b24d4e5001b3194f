"""Match highlighting for search results."""

import re
from typing import Dict, Optional

MARK_OPEN = "<mark>"
MARK_CLOSE = "</mark>"


def highlight_text(text: str, query: str) -> str:
    """Wrap every case-insensitive occurrence of ``query`` in ``<mark>`` tags.

    The query is matched literally; regex metacharacters carry no meaning.
    """
    if not query:
        return text
    pattern = re.compile(re.escape(query), re.IGNORECASE)
    return pattern.sub(lambda m: f"{MARK_OPEN}{m.group(0)}{MARK_CLOSE}", text)


def generate_highlights(query: str, title: str, description: Optional[str] = None) -> Dict[str, str]:
    """Highlighted title/description for the fields that contain the query."""
    needle = query.lower()
    highlights: Dict[str, str] = {}
    if title and needle in title.lower():
        highlights["title"] = highlight_text(title, query)
    if description and needle in description.lower():
        highlights["description"] = highlight_text(description, query)
    return highlights
