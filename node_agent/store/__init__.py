"""
The store module keeps track of the exact version of every component
installed on the node.

- Keys are component names, values are version strings including any
  sub-version suffix. A missing key means the component is not installed.
- Every update is a read-modify-write of the whole record so that setting
  one component never drops another.

This abstract interface allows for various implementations (json file, in-memory, etc.).
"""

from .store import VersionStore
from .in_memory import InMemoryVersionStore
from .json_file import JsonFileVersionStore

__all__ = [
    "VersionStore",
    "InMemoryVersionStore",
    "JsonFileVersionStore",
]
