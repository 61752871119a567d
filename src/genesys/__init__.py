"""genesys package bootstrap.

genesys turns declarative resource descriptions into cloud resources: it
plans changes against live provider state, applies them in dependency
order, and keeps a local ledger of what it created.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# NOTE: Hatch reads the version from here (``tool.hatch.version``).
__version__ = "0.3.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
