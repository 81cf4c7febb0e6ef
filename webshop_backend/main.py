# webshop_backend/main.py
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from webshop_backend.cart import CartService
from webshop_backend.db.database import (
    DATABASE_URL,
    build_engine,
    build_session_factory,
    prepare_database_dir,
)
from webshop_backend.db.init_db import init_db, seed_products
from webshop_backend.errors import (
    AuthenticationError,
    InvalidInput,
    NotFound,
    Unavailable,
    UnknownProduct,
)
from webshop_backend.inventory import InventoryService
from webshop_backend.realtime import DEFAULT_QUEUE_SIZE, Broadcaster
from webshop_backend.routes import router, ws_router
from webshop_backend.utils.logging import configure_logging

load_dotenv()

LOG_LEVEL = os.getenv("WEBSHOP_LOG_LEVEL", "INFO")
SEED_CATALOG = os.getenv("WEBSHOP_SEED_CATALOG", "1").lower() in ("1", "true", "yes")
BROADCAST_QUEUE_SIZE = int(os.getenv("WEBSHOP_BROADCAST_QUEUE_SIZE", str(DEFAULT_QUEUE_SIZE)))
CORS_ORIGINS = [origin.strip() for origin in os.getenv("WEBSHOP_CORS_ORIGINS", "*").split(",") if origin.strip()]

logger = structlog.get_logger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message})


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(UnknownProduct)
    async def unknown_product_handler(request: Request, exc: UnknownProduct):
        return _error(status.HTTP_404_NOT_FOUND, exc.message)

    @app.exception_handler(InvalidInput)
    async def invalid_input_handler(request: Request, exc: InvalidInput):
        return _error(status.HTTP_400_BAD_REQUEST, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        field = ".".join(str(part) for part in errors[0]["loc"][1:]) if errors else ""
        message = f"Invalid or missing field: {field}" if field else "Invalid request"
        return _error(status.HTTP_400_BAD_REQUEST, message)

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        return _error(status.HTTP_404_NOT_FOUND, exc.message)

    @app.exception_handler(AuthenticationError)
    async def authentication_handler(request: Request, exc: AuthenticationError):
        return _error(status.HTTP_401_UNAUTHORIZED, exc.message)

    @app.exception_handler(Unavailable)
    async def unavailable_handler(request: Request, exc: Unavailable):
        logger.error(
            "Store unavailable",
            method=request.method,
            path=request.url.path,
            error=exc.message,
            exc_info=exc,
        )
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


def create_app(database_url: Optional[str] = None, seed_catalog: Optional[bool] = None) -> FastAPI:
    engine = build_engine(database_url or DATABASE_URL)
    session_factory = build_session_factory(engine)
    broadcaster = Broadcaster(max_queue=BROADCAST_QUEUE_SIZE)
    seed = SEED_CATALOG if seed_catalog is None else seed_catalog

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator:
        prepare_database_dir(engine)
        await init_db(engine)
        if seed:
            async with session_factory() as db:
                await seed_products(db)
        await broadcaster.start()
        yield
        await broadcaster.stop()
        await engine.dispose()

    app = FastAPI(title="Webshop Backend", lifespan=lifespan)
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.broadcaster = broadcaster
    app.state.cart_service = CartService(broadcaster)
    app.state.inventory_service = InventoryService(broadcaster)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    app.include_router(router)
    app.include_router(ws_router)

    @app.get("/")
    async def health_check():
        """Health check endpoint."""
        return {"status": "webshop backend running", "connections": broadcaster.connection_count}

    return app


app = create_app()


def run():
    import uvicorn

    configure_logging(LOG_LEVEL)
    uvicorn.run(
        "webshop_backend.main:app",
        host=os.getenv("WEBSHOP_HOST", "0.0.0.0"),
        port=int(os.getenv("WEBSHOP_PORT", "3000")),
    )
