"""GitHub import and sync core for the sub-agent directory.

Imports markdown-defined sub-agents from GitHub repositories, keeps imported
records in step with their source repositories, and tracks API quota.
"""

from .__version__ import __version__

__all__ = ["__version__"]
