"""Command-marker normalization.

Phones and IMEs often swap an ASCII marker for a full-width or look-alike glyph
(``．ping`` instead of ``.ping``). The normalizer maps those back to the
canonical marker so commands still resolve.
"""

from __future__ import annotations

import re
from typing import Optional

# Bidi controls, zero-width characters and BOM that may precede the marker.
_INVISIBLE_PREFIX = re.compile("^[\u200b-\u200f\u202a-\u202e\u2060-\u2064\u2066-\u2069\ufeff]+")

DEFAULT_LOOKALIKES: dict[str, str] = {
    ".": "．。｡․·",
    "!": "！ǃ❗❕",
    "/": "／⁄∕",
    "#": "＃",
    "$": "＄",
    "-": "－‐‑‒–−",
    "?": "？",
}


class PrefixNormalizer:
    """Canonicalize a leading command marker."""

    def __init__(self, marker: str = ".", lookalikes: Optional[str] = None) -> None:
        if not marker:
            raise ValueError("Command marker must not be empty")
        self.marker = marker
        glyphs = DEFAULT_LOOKALIKES.get(marker, "") if lookalikes is None else lookalikes
        self._equivalents = frozenset(glyphs) | {marker}

    def apply(self, text: str) -> str:
        """Return ``text`` with its leading marker canonicalized.

        Invisible leading marks are dropped when a marker follows them; text
        without a marker comes back unchanged.
        """

        if not isinstance(text, str):
            return ""
        cleaned = _INVISIBLE_PREFIX.sub("", text)
        if cleaned.startswith(self.marker):
            return cleaned
        if cleaned and cleaned[0] in self._equivalents:
            return self.marker + cleaned[1:]
        return text

    def is_command(self, text: str) -> bool:
        return text.startswith(self.marker)
