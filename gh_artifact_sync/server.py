"""HTTP gateway receiving GitHub webhook deliveries.

The gateway authenticates and parses deliveries and hands accepted requests
to the coordinator. It never waits for a sync to run: the response is sent
as soon as the request has been admitted, well within the webhook delivery
timeout.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse

from . import __version__
from .config import Config
from .coordinator import SyncCoordinator
from .exceptions import AuthenticationError, MalformedPayload
from .webhook import EVENT_HEADER, authenticate, parse_delivery

_LOGGER = logging.getLogger(__name__)

__all__ = ["create_app", "WEBHOOK_PATH"]

WEBHOOK_PATH = "/api/github/workflow"


def create_app(config: Config, coordinator: SyncCoordinator) -> FastAPI:
    """Create the ASGI application serving the webhook endpoint."""
    secret = config.secret.get_secret_value().encode("utf-8")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await coordinator.start()
        try:
            yield
        finally:
            await coordinator.close()

    app = FastAPI(
        title="gh-artifact-sync",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @app.post(WEBHOOK_PATH)
    async def post_github_workflow(request: Request) -> Response:
        """Receive a webhook delivery and schedule a sync if it calls for one."""
        body = await request.body()
        delivery = request.headers.get("X-GitHub-Delivery", "-")
        _LOGGER.debug("Processing webhook delivery %s", delivery)

        try:
            authenticate(request.headers, body, secret)
        except AuthenticationError as err:
            _LOGGER.warning("Rejecting delivery %s: %s", delivery, err)
            raise HTTPException(
                status_code=(
                    status.HTTP_401_UNAUTHORIZED
                    if err.missing
                    else status.HTTP_403_FORBIDDEN
                ),
                detail=str(err),
            ) from err

        try:
            sync_request = parse_delivery(request.headers.get(EVENT_HEADER), body)
        except MalformedPayload as err:
            _LOGGER.warning("Rejecting delivery %s: %s", delivery, err)
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail=str(err)
            ) from err

        if sync_request is None:
            return Response(status_code=status.HTTP_204_NO_CONTENT)
        if sync_request.branch != config.branch:
            _LOGGER.info(
                "Delivery %s is for branch %s, not %s, ignoring it",
                delivery,
                sync_request.branch,
                config.branch,
            )
            return Response(status_code=status.HTTP_204_NO_CONTENT)

        admission = coordinator.submit(sync_request)
        _LOGGER.info("Delivery %s for %s: %s", delivery, sync_request, admission)
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={"sha": sync_request.commit_sha, "admission": str(admission)},
        )

    return app
