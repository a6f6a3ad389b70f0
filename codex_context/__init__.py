"""codex-context package initialization."""

from __future__ import annotations

__version__ = "0.1.0"

from .api import (  # noqa: E402
    CodexContextError,
    clear_index,
    index,
    search,
    set_data_dir,
    status,
)

__all__ = [
    "__version__",
    "CodexContextError",
    "clear_index",
    "get_version",
    "index",
    "search",
    "set_data_dir",
    "status",
]


def get_version() -> str:
    """Return the current package version."""
    return __version__
