"""
Text Folding Helpers

Case- and accent-insensitive comparison keys for debtor names and item
descriptions ("Émile" and "emile" compare equal).
"""

import unicodedata


def collation_key(value: str) -> str:
    """Fold a string for accent-insensitive, case-insensitive comparison"""
    decomposed = unicodedata.normalize("NFKD", value or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.casefold().strip()


def is_blank(value) -> bool:
    return value is None or not str(value).strip()
