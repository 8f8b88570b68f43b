"""
.. include:: ../README.md
"""

__all__ = [
    "versions",
    "config",
    "manifest",
    "metadata",
    "release",
    "lifecycle",
    "store",
    "repo",
    "applier",
    "controller",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]

__version__ = "1.3.0"
