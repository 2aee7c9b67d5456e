import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from mangum import Mangum
from starlette.middleware.cors import CORSMiddleware

from ledgerapi import containers
from ledgerapi.config import settings
from ledgerapi.core.exception_handlers import (
    handle_base_api_exception,
    handle_http_exception,
    handle_unexpected_error,
    handle_validation_error,
)
from ledgerapi.core.exceptions import BaseAPIException
from ledgerapi.logging_config import setup_logging
from ledgerapi.routers import (
    admin_router,
    generation_router,
    giftcode_router,
    health_router,
    ledger_router,
    notification_router,
    reward_router,
    topup_router,
)

load_dotenv("ledgerapi/.env")
setup_logging(settings.LOG_LEVEL, json_format=settings.LOG_JSON)
logger = logging.getLogger("ledgerapi")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.DB_CREATE_TABLES:
        from ledgerapi.database.connection import engine
        from ledgerapi.models import Base

        Base.metadata.create_all(bind=engine)
        logger.info("Database tables ensured")

    credential_pool = app.container.services.credential_pool()  # type: ignore[attr-defined]
    credential_pool.init()
    try:
        yield
    finally:
        credential_pool.shutdown()


def create_app(container: Optional[containers.Container] = None) -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        debug=settings.DEBUG,
        lifespan=lifespan,
    )
    app.container = container or containers.Container()  # type: ignore[attr-defined]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info(f"Request: {request.method} {request.url.path}")
        response = await call_next(request)
        logger.info(f"Response: {response.status_code} {request.method} {request.url.path}")
        return response

    app.add_exception_handler(BaseAPIException, handle_base_api_exception)
    app.add_exception_handler(HTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    @app.get("/")
    def hello() -> dict:
        return {"message": "Hello World!"}

    app.include_router(health_router.router)
    for module in (
        ledger_router,
        reward_router,
        giftcode_router,
        topup_router,
        generation_router,
        notification_router,
        admin_router,
    ):
        app.include_router(module.router, prefix=settings.API_V1_STR)

    return app


app = create_app()

handler = Mangum(app)
