"""
Domain layer: cache-aware entity operations.
"""

from .directory import DirectoryService

__all__ = ["DirectoryService"]
