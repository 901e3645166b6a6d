"""Default User-Agent for API requests."""

from __future__ import annotations

import platform
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as distribution_version

DISTRIBUTION_NAME = "fairgate"


def version() -> str:
    """Return the installed library version, or "devel" when not installed."""
    try:
        return distribution_version(DISTRIBUTION_NAME)
    except PackageNotFoundError:
        return "devel"


def user_agent() -> str:
    return (
        f"python-fairgate/{version()} "
        f"(Python {platform.python_version()}; "
        f"{platform.system().lower()}/{platform.machine().lower()})"
    )
