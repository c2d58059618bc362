"""Version detection for installed and container builds."""

from __future__ import annotations

import os
from importlib import metadata

DISTRIBUTION_NAME = "trailerstrm"

# Fallback version if nothing else works
_FALLBACK_VERSION = "unknown"


def get_version() -> str:
    """Get the current version string.

    Priority:
    1. BUILD_VERSION environment variable (set during CI/CD)
    2. GIT_SHA environment variable (Docker build arg)
    3. Installed distribution metadata
    4. Fallback to "unknown"
    """
    build_version = os.environ.get("BUILD_VERSION")
    if build_version and build_version.strip():
        return build_version.strip()

    env_sha = os.environ.get("GIT_SHA")
    if env_sha and env_sha.strip():
        return f"dev ({env_sha.strip()})"

    try:
        return metadata.version(DISTRIBUTION_NAME)
    except metadata.PackageNotFoundError:
        return _FALLBACK_VERSION


# Cache the version on module load
__version__ = get_version()
