"""Core infrastructure layer: configuration, errors, observability and ports.

Exports configuration settings to simplify import paths inside tests
(e.g. `from snaptrack.core import settings`).
"""

from .config import settings  # noqa: F401
