# app/core/version.py
"""Application version from the VERSION file or the installed distribution."""
from functools import lru_cache
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

DISTRIBUTION_NAME = "aura-x402-gateway"
VERSION_FILE = Path(__file__).parent.parent.parent / "VERSION"


@lru_cache()
def get_version() -> str:
    """
    Resolve the version string.

    Priority:
    1. VERSION file (written by Docker/CI builds)
    2. Installed package metadata
    3. Fallback to 0.0.0-unknown
    """
    if VERSION_FILE.exists():
        file_version = VERSION_FILE.read_text().strip()
        if file_version:
            return file_version

    try:
        return version(DISTRIBUTION_NAME)
    except PackageNotFoundError:
        return "0.0.0-unknown"


VERSION = get_version()
