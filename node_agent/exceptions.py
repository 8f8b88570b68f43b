"""Exceptions related to node-agent."""

__all__ = [
    "AgentException",
    "InputException",
    "LookupException",
    "ReleaseNotFoundError",
    "RecipeNotFoundError",
    "RepositoryFileNotFoundError",
    "CommandException",
    "ResourceApplyException",
    "FetchException",
    "VersionStoreException",
    "CancelledRunError",
    "ComponentFailedError",
    "ClusterException",
]


class AgentException(Exception):
    """Generic base exception used for this library."""


class InputException(AgentException):
    """Raised when the input files or values are not formatted as expected."""


class LookupException(AgentException):
    """Raised when a release or recipe entry cannot be found."""


class ReleaseNotFoundError(LookupException):
    """Raised when the cluster version has no entry in the release manifest."""

    def __init__(self, cluster_version: str) -> None:
        super().__init__(f"Release {cluster_version} not found")
        self.cluster_version = cluster_version


class RecipeNotFoundError(LookupException):
    """Raised when a component recipe has no block for the requested version."""

    def __init__(self, component: str, version: str) -> None:
        super().__init__(f"Component {component} version {version} not found")
        self.component = component
        self.version = version


class CommandException(AgentException):
    """Raised when there is a failure running a subcommand."""


class ResourceApplyException(AgentException):
    """Raised when a file, directory or permission change could not be applied."""


class FetchException(AgentException):
    """Raised when a remote resource could not be fetched."""


class VersionStoreException(AgentException):
    """Raised when the installed versions store is unreadable or malformed."""


class CancelledRunError(AgentException):
    """Raised when a lifecycle run was cancelled between two components."""


class RepositoryFileNotFoundError(LookupException):
    """Raised when a file does not exist in the component repository."""

    def __init__(self, path: str) -> None:
        super().__init__(f"File {path} not found in repository")
        self.path = path


class ComponentFailedError(AgentException):
    """Raised when installing or uninstalling a component has failed."""

    def __init__(self, component: str, version: str, action: str, message: str) -> None:
        super().__init__(f"Failed to {action} component {component} {version}: {message}")
        self.component = component
        self.version = version
        self.action = action


class ClusterException(AgentException):
    """Raised when a request to the cluster API server has failed."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status
