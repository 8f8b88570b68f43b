"""Representation of the release and component recipe documents.

A repository holds a `releases.yaml` file at its root, mapping a cluster
version to the ordered list of components for that version, and one
`<component>/metadata.yaml` recipe per component, mapping a base version
to the resources to install or uninstall.

```yaml
# releases.yaml
"1.30":
  - name: cni
    version: 1.2.0
    tags: [kapsule]
  - name: kubelet
    version: "~2"
```

```yaml
# kubelet/metadata.yaml
"1.30":
  install:
    - files:
        - state: file
          src: kubelet-{{ arch }}
          dst: /usr/local/bin/kubelet
          mode: "0755"
      services:
        - name: kubelet
          state: started
          enabled: true
  uninstall:
    - services:
        - name: kubelet
          state: stopped
          enabled: false
```
"""

from dataclasses import dataclass, field
from enum import StrEnum
import logging
from typing import Any, TypeVar

import yaml
from mashumaro import DataClassDictMixin, field_options
from mashumaro.codecs import BasicDecoder
from mashumaro.config import BaseConfig
from mashumaro.exceptions import InvalidFieldValue, MissingField

from .exceptions import InputException

__all__ = [
    "Component",
    "ComponentFile",
    "ComponentService",
    "ComponentScript",
    "ResourceGroup",
    "ComponentSections",
    "FileState",
    "ServiceState",
    "parse_releases",
    "parse_recipe",
]

_LOGGER = logging.getLogger(__name__)

RELEASES_FILE = "releases.yaml"
RECIPE_FILE = "metadata.yaml"

_INT_TAG = "tag:yaml.org,2002:int"
_FLOAT_TAG = "tag:yaml.org,2002:float"

T = TypeVar("T")


class ManifestLoader(yaml.SafeLoader):
    """YAML loader that keeps numeric scalars as their literal text.

    Cluster versions such as `1.30` and file modes such as `0644` must not
    be turned into floats or octal integers.
    """


ManifestLoader.yaml_implicit_resolvers = {
    key: [
        (tag, regexp) for tag, regexp in resolvers if tag not in (_INT_TAG, _FLOAT_TAG)
    ]
    for key, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def _decode_tags(value: Any) -> list[str]:
    if not isinstance(value, list):
        raise InputException(f"Invalid tags {value!r}: expected a list")
    return [str(tag) for tag in value]


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    class Config(BaseConfig):
        omit_none = True


class FileState(StrEnum):
    """Desired state of a file resource."""

    FILE = "file"
    TEMPLATE = "template"
    DIRECTORY = "directory"
    ABSENT = "absent"


class ServiceState(StrEnum):
    """Desired running state of a service."""

    STARTED = "started"
    STOPPED = "stopped"


@dataclass
class Component(BaseManifest):
    """A named and versioned unit of node software in a release."""

    name: str
    """The name of the component, also the recipe directory name."""

    version: str = ""
    """The requested version, empty or `~<sub>` are relative to the cluster version."""

    tags: list[str] = field(
        default_factory=list, metadata=field_options(deserialize=_decode_tags)
    )
    """Installer tags used to select the component for a node."""

    def __post_init__(self) -> None:
        if not self.name:
            raise InputException("Invalid component with empty name")


@dataclass
class ComponentFile(BaseManifest):
    """A file, template or directory managed by a component."""

    state: FileState
    """The desired state of the destination path."""

    dst: str
    """The destination path on the node, may be a template."""

    src: str | None = None
    """The source path relative to the component directory, may be a template."""

    mode: str | None = None
    """Octal permission bits, e.g. `0644`."""

    owner: str | None = None
    group: str | None = None

    def __post_init__(self) -> None:
        if self.state in (FileState.FILE, FileState.TEMPLATE) and not self.src:
            raise InputException(f"Invalid {self.state} resource {self.dst} missing src")


@dataclass
class ComponentService(BaseManifest):
    """A systemd unit managed by a component."""

    name: str
    state: ServiceState
    enabled: bool = False


@dataclass
class ComponentScript(BaseManifest):
    """A shell command run by a component."""

    cmd: str


@dataclass
class ResourceGroup(BaseManifest):
    """A batch of files, then services, then scripts applied in order."""

    files: list[ComponentFile] = field(default_factory=list)
    services: list[ComponentService] = field(default_factory=list)
    scripts: list[ComponentScript] = field(default_factory=list)


@dataclass
class ComponentSections(BaseManifest):
    """The install and uninstall steps for one base version of a component."""

    install: list[ResourceGroup] = field(default_factory=list)
    uninstall: list[ResourceGroup] = field(default_factory=list)


_RELEASES_DECODER = BasicDecoder(dict[str, list[Component]])
_RECIPE_DECODER = BasicDecoder(dict[str, ComponentSections])


def _load_document(content: str | bytes, source: str) -> dict[str, Any]:
    """Load a YAML document that must be a non-empty mapping."""
    try:
        doc = yaml.load(content, Loader=ManifestLoader)
    except yaml.YAMLError as err:
        raise InputException(f"Unable to parse {source}: {err}") from err
    if not isinstance(doc, dict):
        raise InputException(f"Invalid {source}: expected a mapping, got {doc!r}")
    return doc


def _decode(decoder: BasicDecoder[T], doc: dict[str, Any], source: str) -> T:
    try:
        return decoder.decode(doc)
    except (MissingField, InvalidFieldValue, TypeError, ValueError, AttributeError) as err:
        raise InputException(f"Invalid {source}: {err}") from err


def parse_releases(content: str | bytes) -> dict[str, list[Component]]:
    """Parse the release manifest mapping a cluster version to its components."""
    doc = _load_document(content, RELEASES_FILE)
    releases = _decode(_RELEASES_DECODER, doc, RELEASES_FILE)
    for cluster_version, components in releases.items():
        names = [component.name for component in components]
        if len(names) != len(set(names)):
            raise InputException(
                f"Invalid {RELEASES_FILE}: duplicate component names in release {cluster_version}: {names}"
            )
    _LOGGER.debug("Parsed releases: %s", list(releases))
    return releases


def parse_recipe(content: str | bytes, component: str) -> dict[str, ComponentSections]:
    """Parse a component recipe mapping a base version to its sections."""
    source = f"{component}/{RECIPE_FILE}"
    doc = _load_document(content, source)
    return _decode(_RECIPE_DECODER, doc, source)
