"""
Entry point for running tenant_sync as a module.

Usage:
    python -m tenant_sync --help
    python -m tenant_sync sync --full
    python -m tenant_sync serve --port 8080
"""

from tenant_sync.cli import cli

if __name__ == "__main__":
    cli()
