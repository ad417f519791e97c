from fastapi import FastAPI

from avatar_build.api.v1 import router as v1_router
from avatar_build.config import get_settings
from avatar_build.logging_setup import configure_logging


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title=settings.app_name)
    app.include_router(v1_router, prefix="/v1")
    return app


app = create_app()
