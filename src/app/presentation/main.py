from contextlib import asynccontextmanager

from fastapi import FastAPI

import inject

from src.app.application.registry import ToolRegistry
from src.app.application.supervisor import BackendSupervisor
from src.app.presentation.errors import install_error_handlers
from src.setup.api_config import get_api_settings
from src.setup.app_config import configure_di
from src.setup.logging_config import configure_logging
from src.setup.supervisor_config import get_supervisor_settings

settings = get_api_settings()
configure_logging(settings.LOG_LEVEL)
configure_di()


@asynccontextmanager
async def lifespan(_: FastAPI):
    supervisor = inject.instance(BackendSupervisor)
    if get_supervisor_settings().SUPERVISOR_EAGER_START:
        await supervisor.start_all(inject.instance(ToolRegistry).list())
    try:
        yield
    finally:
        await supervisor.shutdown()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Runs user tasks in sandboxes that reach tools only through this gateway",
    lifespan=lifespan,
)
install_error_handlers(app)

from src.app.presentation.internal import create_internal_app  # noqa: E402
from src.app.presentation.routes import router as api_router  # noqa: E402

app.include_router(api_router, prefix="")
internal_app = create_internal_app()
