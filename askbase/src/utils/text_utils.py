"""
askbase - Text Utilities
==========================
Helper functions for text cleaning, normalisation, and
filename-derived titles.

These utilities are consumed primarily by the ``IngestionPipeline``
and should remain stateless and side-effect-free.
"""

from __future__ import annotations

import re
import unicodedata
from pathlib import Path


# ── Non-printable character pattern ────────────────────────────────────
# Matches control characters (C0/C1), except \n, \r, \t which we handle
# separately. Also catches BOM, zero-width chars, soft hyphens, etc.
_NON_PRINTABLE_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f\ufeff\u200b\u200c\u200d\u200e\u200f\u00ad\u2060\ufffe]")
_TITLE_SEPARATORS_RE = re.compile(r"[_\s]+")


# ── Public API ─────────────────────────────────────────────────────────

def clean_text(text: str) -> str:
    """
    Sanitise raw document text for embedding.

    Steps:
        1. Unicode NFC normalisation (canonical composition).
        2. Strip non-printable / zero-width characters and formatting
           artifacts (BOM, soft hyphens, directional marks).
        3. Collapse runs of horizontal whitespace (spaces, tabs,
           non-breaking spaces) into a single space, *preserving*
           newlines.
        4. Strip leading / trailing whitespace from every line.
        5. Collapse 3+ consecutive blank lines to 2.

    Args:
        text: Raw text extracted from a source file.

    Returns:
        Cleaned, normalised text ready for embedding.
    """
    text = unicodedata.normalize("NFC", text)
    text = _NON_PRINTABLE_RE.sub("", text)
    text = re.sub(r"[^\S\n]+", " ", text)
    lines = [line.strip() for line in text.splitlines()]
    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def title_from_filename(filename: str) -> str:
    """
    Derive a human-readable document title from a file name.

    Examples::

        "intro_to_ml.txt"       → "intro to ml"
        "Neural  Networks.txt"  → "Neural Networks"

    Args:
        filename: The file's name (stem + extension), **not** the full path.
    """
    return _TITLE_SEPARATORS_RE.sub(" ", Path(filename).stem).strip()
