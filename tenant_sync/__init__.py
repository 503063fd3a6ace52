"""
tenant_sync - Notion clients database to tenant registry synchronization.

Resolves incoming Notion records against the tenant registry, creating,
updating and removing tenants so the registry mirrors the source collection.
"""

__version__ = "0.3.0"
