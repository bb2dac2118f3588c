from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pathlib import Path
from datetime import datetime
from typing import Optional
import os
import logging

from adogalo.core.clock import Clock, utcnow
from adogalo.core.errors import EscrowError
from adogalo.core.services import build_services, ensure_indexes
from adogalo.notification_service import NotificationService
from adogalo.permissions import PermissionChecker
from adogalo.project_routes import create_project_routes
from adogalo.escrow_routes import create_escrow_routes
from adogalo.manager_routes import create_manager_routes

ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def create_app(
    db: Optional[AsyncIOMotorDatabase] = None,
    client: Optional[AsyncIOMotorClient] = None,
    use_transactions: Optional[bool] = None,
    notifications: Optional[NotificationService] = None,
    clock: Clock = utcnow
) -> FastAPI:
    """
    Build the API application.

    Without arguments the MongoDB connection comes from MONGO_URL / DB_NAME;
    tests pass their own database (and use_transactions=False).
    """
    if db is None:
        mongo_url = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
        client = AsyncIOMotorClient(mongo_url)
        db = client[os.environ.get("DB_NAME", "adogalo")]
    if use_transactions is None:
        use_transactions = _env_flag("MONGO_TRANSACTIONS", True)

    services = build_services(db, client, use_transactions=use_transactions, clock=clock)
    notifications = notifications or NotificationService.from_env()
    notifications.register(services.events)
    permission_checker = PermissionChecker(db)

    app = FastAPI(
        title="Adogalo Escrow API",
        version="1.0.0",
        description="Escrow-backed milestone payments for construction projects"
    )
    app.state.services = services
    app.state.notifications = notifications

    # ============================================
    # ERROR MAPPING
    # ============================================

    @app.exception_handler(EscrowError)
    async def escrow_error_handler(request: Request, exc: EscrowError):
        logger.info(f"[API] {request.method} {request.url.path} -> {exc.reason}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_response()))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content=jsonable_encoder({
                "success": False,
                "message": "Data tidak valid",
                "reason": "validation_failed",
                "errors": exc.errors(),
            })
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": exc.detail},
            headers=exc.headers
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"[API] Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Terjadi kesalahan pada server", "reason": "internal_error"}
        )

    # ============================================
    # ROUTERS
    # ============================================

    app.include_router(create_project_routes(services, permission_checker))
    app.include_router(create_escrow_routes(services, permission_checker))
    app.include_router(create_manager_routes(services, permission_checker))

    @app.get("/api/health")
    async def health_check():
        return {
            "status": "healthy",
            "timestamp": datetime.utcnow(),
            "version": "1.0.0",
            "transactions": services.ctx.transactions.use_transactions,
            "notifications": "brevo" if notifications.enabled else "log-only",
        }

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def create_indexes():
        await ensure_indexes(db)

    @app.on_event("shutdown")
    async def shutdown_db_client():
        if client is not None:
            client.close()

    return app


app = create_app()
