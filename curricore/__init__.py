"""
Core package for the curricore content analysis toolkit.

Kept import-light so the records and config helpers can be used without
pulling in DSPy or the analysis apps.
"""

from importlib import metadata


def get_version() -> str:
    """Return the installed project version."""
    try:
        return metadata.version("curricore")
    except metadata.PackageNotFoundError:
        return "0.0.0"


__all__ = ["get_version"]
