"""
tenant_sync.utils - Utility module

Common utilities including logging configuration and name normalization.
"""

from tenant_sync.utils.normalization import (
    extract_base_name,
    normalize_string,
    significant_words,
    slugify,
)
from tenant_sync.utils.paths import DEFAULT_CONFIG_DIR, resolve_config_dir

__all__ = [
    "normalize_string",
    "slugify",
    "extract_base_name",
    "significant_words",
    "resolve_config_dir",
    "DEFAULT_CONFIG_DIR",
]
