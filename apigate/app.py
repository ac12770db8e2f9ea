from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Iterable, Optional, Tuple, Union

from fastapi import APIRouter, FastAPI

from apigate.api.error_handling import register_exception_handlers
from apigate.api.pipeline import RequestPipeline
from apigate.api.routes import (
    RouteGroup,
    account_router,
    admin_router,
    health_router,
    mount_route_group,
    not_found_router,
    session_router,
)
from apigate.logging import get_logger
from apigate.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

RouteMount = Tuple[Union[RouteGroup, str], APIRouter]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run startup steps before the listener binds; drain on shutdown."""
    runtime: Runtime = app.state.runtime
    await runtime.lifecycle.start()
    logger.info("server_ready", env=runtime.settings.app_env.value, version=__version__)

    yield

    exit_code = await runtime.lifecycle.shutdown("lifespan_shutdown")
    logger.info("runtime_cleanup_complete", exit_code=exit_code)


def create_app(
    runtime: Optional[Runtime] = None,
    route_groups: Iterable[RouteMount] = (),
) -> FastAPI:
    """Build the application around an explicitly constructed runtime.

    ``route_groups`` pairs a declared group (or its name in ``ROUTE_GROUPS``)
    with the router of an external collaborator. Unmatched paths fall through
    to the not-found route, which is always included last.
    """
    if runtime is None:
        from apigate.config import get_settings

        runtime = Runtime(get_settings(), version=__version__)

    docs_enabled = not runtime.settings.is_production
    app = FastAPI(
        title="apigate",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if docs_enabled else None,
        redoc_url=None,
        openapi_url="/openapi.json" if docs_enabled else None,
    )
    app.state.runtime = runtime

    app.add_middleware(RequestPipeline, runtime=runtime)
    register_exception_handlers(app)

    app.include_router(health_router)
    mount_route_group(app, "auth", session_router)
    mount_route_group(app, "account", account_router)
    mount_route_group(app, "admin", admin_router)
    for group, router in route_groups:
        mount_route_group(app, group, router)
    app.include_router(not_found_router)
    return app
