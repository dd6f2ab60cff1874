from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import api as api_module
from .config import Settings, get_settings, runtime_config_issues

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(settings: Settings) -> None:
    level = logging.getLevelName(settings.log_level)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("apscheduler").setLevel(max(level, logging.WARNING))


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings)
    config_issues = runtime_config_issues(settings)
    if config_issues:
        if settings.runtime_config_guard_mode == "enforce":
            raise RuntimeError(
                "runtime config guard blocked startup: "
                + "; ".join(config_issues)
                + ". Remediation: set the missing values or use NOTIFIER_SENDER_TYPE=stub."
            )
        if settings.runtime_config_guard_mode == "warn":
            for issue in config_issues:
                logger.warning("runtime config guard warning: %s", issue)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if settings.delivery_schedule_enabled:
            api_module.daily_schedule.start()
        try:
            yield
        finally:
            api_module.daily_schedule.stop()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.include_router(api_module.health_router)
    app.include_router(api_module.router)
    return app


app = create_app()
