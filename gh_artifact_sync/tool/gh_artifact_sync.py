"""Command line tool running the artifact sync service."""

import argparse
import asyncio
import logging
import sys
import traceback

import uvicorn

from gh_artifact_sync.client import ArtifactClient
from gh_artifact_sync.config import Config
from gh_artifact_sync.coordinator import SyncCoordinator
from gh_artifact_sync.exceptions import SyncException
from gh_artifact_sync.layout import OutputLayout
from gh_artifact_sync.publisher import Publisher
from gh_artifact_sync.server import create_app
from gh_artifact_sync.task import task_service_context

_LOGGER = logging.getLogger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Mirror the newest GitHub Actions artifact of a branch behind a "
            "symlink. Configured through GH_ARTIFACT_SYNC_* environment variables."
        ),
    )
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        help="Overrides GH_ARTIFACT_SYNC_LOG",
    )
    return parser


def _log_level(config: Config, override: str | None) -> str:
    level = (override or config.log_level).upper()
    if level not in LOG_LEVELS:
        raise SyncException(f"Unknown log level '{config.log_level}'")
    return level


async def serve(config: Config) -> None:
    """Run the webhook gateway until the process is asked to stop."""
    client = ArtifactClient(config.token.get_secret_value(), api_url=config.api_url)
    publisher = Publisher(OutputLayout(config.output), config.symlink)
    with task_service_context() as task_service:
        coordinator = SyncCoordinator(
            config.branch,
            config.artifact,
            client,
            publisher,
            retry_policy=config.retry_policy(),
            retain=config.retain,
            task_service=task_service,
        )
        app = create_app(config, coordinator)
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=config.addr,
                port=config.port,
                log_config=None,
                access_log=True,
            )
        )
        _LOGGER.info(
            "Tracking artifact '%s' of branch %s, listening on %s:%d",
            config.artifact,
            config.branch,
            config.addr,
            config.port,
        )
        try:
            await server.serve()
        finally:
            client.close()


def main() -> None:
    """gh-artifact-sync command line tool main entry point."""
    parser = _make_parser()
    args = parser.parse_args()

    try:
        config = Config.from_env()
        logging.basicConfig(
            level=_log_level(config, args.log_level),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        asyncio.run(serve(config))
    except SyncException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("gh-artifact-sync error: ", err, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
