from fastapi import FastAPI, APIRouter
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from typing import Optional
from datetime import datetime
import logging

import config
from funding_engine import (
    DocumentStore, MotorDocumentStore, InMemoryDocumentStore, FundingServices, FUNDING_LIFECYCLE
)
from permissions import RolePermissionGate
from funding_routes import funding_router
from audit_routes import audit_router
from withdrawal_routes import withdrawal_router

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_store() -> DocumentStore:
    """Store selected by STORE_BACKEND"""
    if config.STORE_BACKEND == "memory":
        logger.warning("[STORE] Using in-memory store; data is lost on restart")
        return InMemoryDocumentStore()
    client = AsyncIOMotorClient(config.MONGO_URL)
    logger.info(f"[STORE] Using MongoDB database '{config.DB_NAME}'")
    return MotorDocumentStore(client, client[config.DB_NAME])


def create_app(store: Optional[DocumentStore] = None) -> FastAPI:
    store = store or build_store()

    app = FastAPI(
        title="Funding Management - Lifecycle & Audit",
        version="1.0.0",
        description="Funding record lifecycle, dual-source reconciliation and audit"
    )
    app.state.services = FundingServices(
        store,
        RolePermissionGate(),
        reason_min_length=config.WITHDRAWAL_REASON_MIN_LENGTH
    )

    # Create router with /api prefix
    api_router = APIRouter(prefix="/api")

    @api_router.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "timestamp": datetime.utcnow(),
            "version": "1.0.0",
            "store": type(store).__name__
        }

    @api_router.get("/lifecycle")
    async def lifecycle_graph():
        """Record statuses and legal transitions"""
        return {
            "graph": FUNDING_LIFECYCLE.get_graph(),
            "transitions": FUNDING_LIFECYCLE.get_transitions()
        }

    # Include routers in main app
    app.include_router(api_router)
    app.include_router(funding_router)
    app.include_router(audit_router)
    app.include_router(withdrawal_router)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=config.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def ensure_indexes():
        await app.state.services.ensure_indexes()

    @app.on_event("shutdown")
    async def shutdown_db_client():
        if isinstance(store, MotorDocumentStore):
            store.client.close()

    return app


app = create_app()
