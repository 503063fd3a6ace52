"""
tenant_sync.storage - Tenant registry persistence
"""

from tenant_sync.storage.db import DuplicateSlugError, RegistryDatabase, RegistryError

__all__ = ["RegistryDatabase", "RegistryError", "DuplicateSlugError"]
