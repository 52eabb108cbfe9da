"""Project Metadata based on it's``pyproject.toml``."""

from __future__ import annotations

import importlib.metadata

__all__ = ("__project__", "__version__")

__version__ = importlib.metadata.version("litestar-flows")
"""Version of the project."""
__project__ = importlib.metadata.metadata("litestar-flows")["Name"]
"""Name of the project."""
