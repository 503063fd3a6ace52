"""
tenant_sync.web - HTTP surface for webhooks and sync administration
"""

from tenant_sync.web.app import create_app

__all__ = ["create_app"]
