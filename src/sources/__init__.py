"""Concrete ``LocalDataSource`` implementations.

Platform readers (chat databases, address books) plug in here.  The folder
reader backs the screenshots service on every platform.
"""

from src.sources.directory import DirectorySource

__all__ = ["DirectorySource"]
