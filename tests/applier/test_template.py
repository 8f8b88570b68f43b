"""Tests for template rendering."""

import pytest

from node_agent.applier.template import node_arch, render, render_path
from node_agent.exceptions import ResourceApplyException


@pytest.mark.parametrize(
    ("machine", "expected"),
    [
        ("x86_64", "amd64"),
        ("aarch64", "arm64"),
        ("armv7l", "arm"),
        ("riscv64", "riscv64"),
        ("mips", "mips"),
    ],
)
def test_node_arch(machine: str, expected: str) -> None:
    """Test machine names are mapped to release architectures."""
    assert node_arch(machine) == expected


def test_render_path() -> None:
    """Test paths are rendered with the base version and architecture."""
    assert (
        render_path("bin/kubelet-{{ version }}-{{ arch }}", "1.30.2~4", "arm64")
        == "bin/kubelet-1.30.2-arm64"
    )


def test_render_keeps_trailing_newline() -> None:
    """Test rendered files keep their final newline."""
    assert render("name={{ name }}\n", {"name": "node-1"}) == "name=node-1\n"


@pytest.mark.parametrize(
    "content",
    ["{{ missing }}", "{% if %}", "{{ 1 // 0 }}", "{{ 'v' + 1 }}"],
)
def test_render_errors(content: str) -> None:
    """Test invalid or incomplete templates."""
    with pytest.raises(ResourceApplyException):
        render(content, {})
