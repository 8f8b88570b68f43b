"""Rendering of component templates and templated paths."""

import logging
import platform
from typing import Any

import jinja2

from node_agent.exceptions import ResourceApplyException
from node_agent.versions import trim_version

_LOGGER = logging.getLogger(__name__)

# Architecture names as used in release artifact names
_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
    "i386": "386",
    "i686": "386",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
    "riscv64": "riscv64",
}

_ENV = jinja2.Environment(
    undefined=jinja2.StrictUndefined,
    keep_trailing_newline=True,
    autoescape=False,
)


def node_arch(machine: str | None = None) -> str:
    """Return the processor architecture of the node, e.g. `amd64`."""
    machine = (machine or platform.machine()).lower()
    return _ARCH_ALIASES.get(machine, machine)


def render(content: str, context: dict[str, Any]) -> str:
    """Render a template string against the context.

    Syntax errors, undefined values and errors raised while evaluating an
    expression are all reported as a ResourceApplyException.
    """
    try:
        return _ENV.from_string(content).render(context)
    except Exception as err:  # pylint: disable=broad-except
        raise ResourceApplyException(f"Failed to render template: {err}") from err


def render_path(path: str, version: str, arch: str) -> str:
    """Render a source or destination path with the version and architecture."""
    return render(path, {"version": trim_version(version), "arch": arch})
