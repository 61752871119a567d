"""Process exit codes shared by every genesys command."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    VALIDATION = 1
    PROVIDER = 2
    CANCELLED = 130
