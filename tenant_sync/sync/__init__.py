"""
tenant_sync.sync - Entity resolution and synchronization

Source record and tenant models, the tenant matcher and the sync engine.
Import the engine from tenant_sync.sync.engine.
"""
