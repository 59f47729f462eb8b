import os
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from intake_workflow import __version__
from intake_workflow.api import admin, health, intake, webhook
from intake_workflow.dependencies import WorkflowContainer
from intake_workflow.exceptions import register_exception_handlers
from intake_workflow.lifespan import lifespan
from intake_workflow.logging_config import setup_logging


def create_app(container: Optional[WorkflowContainer] = None) -> FastAPI:
    app = FastAPI(
        title="Patient Intake Workflow",
        version=__version__,
        lifespan=lifespan
    )
    app.state.container = container

    app.state.limiter = webhook.limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    allowed_origins_str = os.getenv("ALLOWED_ORIGINS")
    if allowed_origins_str:
        allowed_origins = [origin.strip() for origin in allowed_origins_str.split(",")]
        logger.info(f"CORS allowed origins: {allowed_origins}")
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST"],
            allow_headers=["Content-Type", "X-Admin-Key"],
            max_age=600
        )

    register_exception_handlers(app)

    app.include_router(health.router, tags=["Health"])
    app.include_router(webhook.router, tags=["Webhook"])
    app.include_router(intake.router, prefix="/intake", tags=["Intake"])
    app.include_router(admin.router, prefix="/admin", tags=["Admin"])
    return app


def run():
    import uvicorn

    setup_logging("api")
    uvicorn.run(
        "intake_workflow.main:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    run()
