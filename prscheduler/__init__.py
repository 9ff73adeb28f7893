"""PRSCHEDULER — schedule GitHub auto-merge and remediate when it stalls."""

from prscheduler.identity import __version__

__all__ = ["__version__"]
