"""
String normalization utilities for tenant matching.

Provides the name normalization, slug generation and base-name extraction
used when resolving Notion records against existing tenants.
"""

from __future__ import annotations

import re
import unicodedata

# Fallback slug for names that contain no usable characters
DEFAULT_SLUG = "tenant"

# Suffixes removed when deriving a base name, applied in order
_BASE_NAME_SUFFIXES = (
    re.compile(r"\s+\d+$"),  # "Acme 123"
    re.compile(r"\s+[-–—]\s*\w+$"),  # "Acme - West", not "Hewlett-Packard"
    re.compile(r"\s*\(\s*\w+\s*\)$"),  # "Acme (Old)"
    re.compile(r"\s*\[\s*\w+\s*\]$"),  # "Acme [Test]"
)


def normalize_string(value: str, remove_spaces: bool = True) -> str:
    """
    Normalize a string for name comparison.

    Lowercases, folds accents and strips every character that is not a
    letter or digit.

    Args:
        value: String to normalize
        remove_spaces: If True, remove all whitespace from the result.
                      If False, runs of whitespace collapse to one space.

    Returns:
        Normalized lowercase string
    """
    if not value:
        return ""

    normalized = unicodedata.normalize("NFKD", value)
    normalized = "".join(c for c in normalized if not unicodedata.combining(c))
    normalized = normalized.lower()
    normalized = re.sub(r"[^a-z0-9\s]", "", normalized)
    normalized = re.sub(r"\s+", " ", normalized).strip()

    if remove_spaces:
        normalized = normalized.replace(" ", "")

    return normalized


def slugify(name: str) -> str:
    """
    Generate a URL-safe slug from a tenant name.

    "Hockey Think Tank" -> "hockey-think-tank". Names with no usable
    characters produce DEFAULT_SLUG.
    """
    slug = (name or "").lower()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    slug = slug.strip("-")
    return slug or DEFAULT_SLUG


def extract_base_name(name: str) -> str:
    """
    Strip trailing numeric tokens and dash or bracket qualifiers.

    Examples:
        "Hockey Think Tank 123" -> "Hockey Think Tank"
        "Acme - Staging" -> "Acme"
        "Acme (Old)" -> "Acme"
    """
    base = (name or "").strip()
    for pattern in _BASE_NAME_SUFFIXES:
        base = pattern.sub("", base)
    return base.strip()


def significant_words(name: str, min_length: int = 3) -> list[str]:
    """Return lowercase words of at least min_length characters."""
    words = re.split(r"\s+", (name or "").lower().strip())
    return [w for w in words if len(w) >= min_length]
