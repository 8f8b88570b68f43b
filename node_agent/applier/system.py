"""Resource applier acting on the local system."""

import asyncio
import grp
import logging
import os
import posixpath
import pwd
import shutil

import aiofiles

from node_agent.command import Command, CommandResult
from node_agent.exceptions import InputException, ResourceApplyException
from node_agent.manifest import (
    ComponentFile,
    ComponentScript,
    ComponentService,
    FileState,
    ResourceGroup,
    ServiceState,
)
from node_agent.versions import trim_version

from .applier import ApplyContext, ResourceApplier
from .template import node_arch, render, render_path

_LOGGER = logging.getLogger(__name__)

SYSTEMCTL = "/usr/bin/systemctl"
SHELL = "/bin/bash"

# Seconds to wait for a systemctl call, a unit job may wait for its start timeout
SYSTEMCTL_TIMEOUT = 300.0

# systemctl exit codes for a unit that does not exist
DISABLE_UNIT_UNKNOWN = 1
STOP_UNIT_UNKNOWN = 5

DEFAULT_FILE_MODE = "0644"
DEFAULT_DIRECTORY_MODE = "0755"
DEFAULT_OWNER = "root"
DEFAULT_GROUP = "root"


def _parse_mode(mode: str | None, default: str) -> int:
    try:
        return int(mode or default, 8)
    except ValueError as err:
        raise ResourceApplyException(f"Failed to parse mode {mode}: {err}") from err


def _lookup_ids(owner: str | None, group: str | None) -> tuple[int, int]:
    owner = owner or DEFAULT_OWNER
    group = group or DEFAULT_GROUP
    try:
        uid = pwd.getpwnam(owner).pw_uid
    except KeyError as err:
        raise ResourceApplyException(f"Failed to lookup user {owner}") from err
    try:
        gid = grp.getgrnam(group).gr_gid
    except KeyError as err:
        raise ResourceApplyException(f"Failed to lookup group {group}") from err
    return uid, gid


def _set_permissions(path: str, mode: int, owner: str | None, group: str | None) -> None:
    uid, gid = _lookup_ids(owner, group)
    os.chmod(path, mode)
    os.chown(path, uid, gid)


def _make_directory(path: str, mode: int, owner: str | None, group: str | None) -> None:
    try:
        os.mkdir(path, mode)
    except FileExistsError:
        if not os.path.isdir(path):
            raise
    # mkdir only applies the mode on creation and is subject to the umask
    _set_permissions(path, mode, owner, group)


def _remove(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    elif os.path.lexists(path):
        os.remove(path)


class SystemResourceApplier(ResourceApplier):
    """Applies files, services and scripts on the node."""

    def __init__(
        self,
        systemctl: str = SYSTEMCTL,
        shell: str = SHELL,
        arch: str | None = None,
        systemctl_timeout: float | None = SYSTEMCTL_TIMEOUT,
    ) -> None:
        """Initialize the SystemResourceApplier.

        Args:
            systemctl: Path to the systemctl binary.
            shell: Shell used to run scripts.
            arch: Architecture exposed to templates, detected when not set.
            systemctl_timeout: Seconds to wait for each systemctl call.
        """
        self._systemctl = systemctl
        self._shell = shell
        self._arch = arch or node_arch()
        self._systemctl_timeout = systemctl_timeout

    async def apply(
        self,
        component: str,
        version: str,
        groups: list[ResourceGroup],
        context: ApplyContext,
    ) -> None:
        """Apply the files, then services, then scripts of every group.

        Unit files are reloaded once per group, after its files.
        """
        for group in groups:
            await self.apply_files(component, version, group.files, context)
            await self._run_systemctl("daemon-reload")
            await self.apply_services(group.services)
            await self.apply_scripts(group.scripts)

    async def apply_files(
        self,
        component: str,
        version: str,
        files: list[ComponentFile],
        context: ApplyContext,
    ) -> None:
        """Converge each path to its declared state."""
        for file in files:
            src = render_path(file.src, version, self._arch) if file.src else None
            dst = render_path(file.dst, version, self._arch)
            try:
                await self._apply_file(component, version, file, src, dst, context)
            except OSError as err:
                raise ResourceApplyException(
                    f"Failed to apply {file.state} {dst}: {err}"
                ) from err

    async def _apply_file(
        self,
        component: str,
        version: str,
        file: ComponentFile,
        src: str | None,
        dst: str,
        context: ApplyContext,
    ) -> None:
        match file.state:
            case FileState.FILE | FileState.TEMPLATE:
                if src is None:
                    raise InputException(f"Invalid {file.state} resource {dst} missing src")
                content = await context.reader.read_file(posixpath.join(component, src))
                if file.state == FileState.TEMPLATE:
                    template_context = {
                        **context.metadata.template_context(),
                        "version": trim_version(version),
                        "arch": self._arch,
                    }
                    try:
                        source = content.decode("utf-8")
                    except UnicodeDecodeError as err:
                        raise ResourceApplyException(
                            f"Failed to decode template {src}: {err}"
                        ) from err
                    content = render(source, template_context).encode("utf-8")
                # A directory destination keeps the source file name
                if dst.endswith("/"):
                    dst = dst + posixpath.basename(src)
                mode = _parse_mode(file.mode, DEFAULT_FILE_MODE)
                async with aiofiles.open(dst, mode="wb") as dst_file:
                    await dst_file.write(content)
                await asyncio.to_thread(
                    _set_permissions, dst, mode, file.owner, file.group
                )
                if file.state == FileState.TEMPLATE:
                    _LOGGER.info("Template rendered: %s", dst)
                else:
                    _LOGGER.info("File copied: %s", dst)
            case FileState.DIRECTORY:
                mode = _parse_mode(file.mode, DEFAULT_DIRECTORY_MODE)
                await asyncio.to_thread(
                    _make_directory, dst, mode, file.owner, file.group
                )
                _LOGGER.info("Directory created: %s", dst)
            case FileState.ABSENT:
                await asyncio.to_thread(_remove, dst)
                _LOGGER.info("File/Directory removed: %s", dst)

    async def _run_systemctl(
        self, *args: str, retcodes: list[int] | None = None
    ) -> CommandResult:
        return await Command(
            [self._systemctl, *args],
            retcodes=retcodes,
            timeout=self._systemctl_timeout,
        ).run()

    async def apply_services(self, services: list[ComponentService]) -> None:
        """Drive each service to its declared state."""
        for service in services:
            if service.enabled:
                await self._run_systemctl("enable", service.name)
                _LOGGER.info("Service enabled: %s", service.name)
            else:
                result = await self._run_systemctl(
                    "disable", service.name, retcodes=[DISABLE_UNIT_UNKNOWN]
                )
                if not result.success:
                    _LOGGER.info("Service %s does not exist, skipping", service.name)
                    continue
                _LOGGER.info("Service disabled: %s", service.name)

            match service.state:
                case ServiceState.STARTED:
                    await self._run_systemctl("start", service.name)
                    _LOGGER.info("Service started: %s", service.name)
                case ServiceState.STOPPED:
                    result = await self._run_systemctl(
                        "stop", service.name, retcodes=[STOP_UNIT_UNKNOWN]
                    )
                    if result.success:
                        _LOGGER.info("Service stopped: %s", service.name)

    async def apply_scripts(self, scripts: list[ComponentScript]) -> None:
        """Run each script in a shell, in order."""
        for script in scripts:
            await Command([self._shell, "-c", script.cmd]).run()
            _LOGGER.info("Script executed: %s", script.cmd)
