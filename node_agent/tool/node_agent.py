"""Command line tool converging the node components and running the controller."""

import argparse
import asyncio
import logging
import os
from pathlib import Path
import signal
import sys
import traceback

from node_agent import __version__
from node_agent.applier import SystemResourceApplier
from node_agent.config import DEFAULT_VERSIONS_FILE, AgentConfig
from node_agent.controller import (
    KubernetesClusterClient,
    NodeController,
    metadata_engine_runner,
)
from node_agent.exceptions import AgentException
from node_agent.lifecycle import ComponentLifecycleEngine
from node_agent.metadata import (
    CredentialProvider,
    ExternalNodeCredentialProvider,
    HTTPMetadataFetcher,
    InstanceCredentialProvider,
    fetch_node_metadata,
)
from node_agent.store import JsonFileVersionStore

_LOGGER = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Installs the node components of the cluster release and keeps them up to date.",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="INFO",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--versions-file",
        type=Path,
        default=DEFAULT_VERSIONS_FILE,
        help="File recording the installed component versions.",
    )
    parser.add_argument(
        "--external-node",
        action="store_true",
        help="Register as an external node using the POOL_ID, POOL_REGION and "
        "SCW_SECRET_KEY environment variables.",
    )
    parser.add_argument(
        "--skip-root-check",
        action="store_true",
        help="Do not require running as root.",
    )
    return parser


def _credential_provider(config: AgentConfig) -> CredentialProvider:
    if config.external_node:
        return ExternalNodeCredentialProvider(cache_file=config.userdata_cache_file)
    return InstanceCredentialProvider()


async def run_agent(config: AgentConfig, skip_root_check: bool = False) -> None:
    """Install the node components then reconcile the node until stopped."""
    if not skip_root_check and os.geteuid() != 0:
        raise AgentException("node-agent must be run as root")

    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, cancel.set)

    _LOGGER.info("Starting node-agent %s", __version__)
    store = JsonFileVersionStore(config.versions_file)
    credentials = _credential_provider(config)
    fetcher = HTTPMetadataFetcher()
    engine = ComponentLifecycleEngine(store, SystemResourceApplier())

    metadata = await fetch_node_metadata(credentials, fetcher)
    await engine.run(metadata, cancel)
    _LOGGER.info("Node components installed")
    if cancel.is_set():
        return

    cluster = await asyncio.to_thread(
        KubernetesClusterClient.from_metadata, metadata, config.resync_period
    )
    controller = NodeController(
        cluster,
        metadata_engine_runner(credentials, fetcher, engine),
        store,
        metadata.name,
        __version__,
        config,
    )
    try:
        await controller.run(cancel)
    finally:
        await cluster.close()
    _LOGGER.info("node-agent stopped")


def main(argv: list[str] | None = None) -> None:
    """node-agent command line tool main entry point."""
    parser = _make_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level, format=LOG_FORMAT)

    config = AgentConfig(
        versions_file=args.versions_file,
        external_node=args.external_node,
    )
    try:
        asyncio.run(run_agent(config, skip_root_check=args.skip_root_check))
    except AgentException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("node-agent error: ", err, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
