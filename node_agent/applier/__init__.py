"""Applies the resources of a component recipe to the node.

The lifecycle engine only decides what to install or uninstall, the
applier performs the side effects: writing files and templates, managing
directories, driving systemd units and running scripts.
"""

from .applier import ApplyContext, ResourceApplier
from .system import SystemResourceApplier

__all__ = [
    "ApplyContext",
    "ResourceApplier",
    "SystemResourceApplier",
]
