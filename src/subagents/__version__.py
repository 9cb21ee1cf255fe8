"""Version information for the sub-agent sync core.

Single source of truth for version number.
"""

__version__ = "1.0.0"
__version_info__ = tuple(int(part) for part in __version__.split("."))

# Version history:
# 1.0.0 - Repository import, sync engine, webhooks, quota management
