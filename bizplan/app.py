"""
FastAPI application for the business plan co-editing service
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from bizplan.api.business_plan_routes import router as business_plan_router
from bizplan.config import config
from bizplan.database.connection import close_async_database, get_async_database
from bizplan.database.entity_store import EntityStore
from bizplan.database.memory_entity_store import InMemoryEntityStore
from bizplan.database.mongo_entity_store import MongoEntityStore
from bizplan.exceptions import (
    BusinessPlanError,
    NotFoundError,
    StaleChangeError,
    TransientError,
    ValidationError,
)
from bizplan.services.ai_change_drafter import ChangeDrafter, OpenAIChangeDrafter
from bizplan.services.business_plan_session import SessionRegistry
from bizplan.utils.logger import setup_logger

logger = setup_logger(__name__)

ERROR_STATUS_CODES = {
    ValidationError: 422,
    NotFoundError: 404,
    StaleChangeError: 409,
    TransientError: 503,
}


def status_code_for(exc: BusinessPlanError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


def create_app(
    store: Optional[EntityStore] = None, drafter: Optional[ChangeDrafter] = None
) -> FastAPI:
    """
    ✅ FastAPI application factory

    Args:
        store: Entity store to use; chosen by ENTITY_STORE (MongoDB by default) when omitted
        drafter: Change drafter; OpenAI when omitted and CHATGPT_API_KEY is set
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # ===== STARTUP =====
        logger.info(f"🚀 Starting Business Plan Service (ENV={config.ENV})")
        active_store = store
        owns_database = False
        if active_store is None and config.ENTITY_STORE == "memory":
            logger.warning("⚠️ ENTITY_STORE=memory, plan data is lost on shutdown")
            active_store = InMemoryEntityStore()
        elif active_store is None:
            active_store = MongoEntityStore(await get_async_database())
            await active_store.create_indexes()
            owns_database = True

        active_drafter = drafter
        if active_drafter is None and config.CHATGPT_API_KEY:
            active_drafter = OpenAIChangeDrafter()
        if active_drafter is None:
            logger.warning("⚠️ No CHATGPT_API_KEY configured, AI chat is disabled")

        app.state.session_registry = SessionRegistry(active_store, drafter=active_drafter)
        logger.info("✅ Application startup completed")

        yield

        # ===== SHUTDOWN =====
        logger.info("🛑 Shutting down Business Plan Service...")
        await app.state.session_registry.close_all()
        if owns_database:
            close_async_database()
        logger.info("✅ Shutdown completed")

    app = FastAPI(
        title="Business Plan Co-Editing Service",
        description="Chapters, sections and tasks of a business plan, co-edited with an AI assistant through reviewable pending changes",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.exception_handler(BusinessPlanError)
    async def business_plan_error_handler(request: Request, exc: BusinessPlanError):
        """
        Global handler for business plan errors

        Returns the mapped status code with body:
        {
            "error": "TARGET_NOT_FOUND",
            "message": "chapter not found: chapter_123",
            ...error specific fields
        }
        """
        status_code = status_code_for(exc)
        if status_code >= 500:
            logger.error(f"❌ {request.method} {request.url.path}: {exc.message}")
        else:
            logger.warning(f"⚠️ {request.method} {request.url.path}: {exc.error_code} {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log request validation errors with their locations"""
        logger.error(f"❌ FASTAPI VALIDATION ERROR (422) {request.method} {request.url.path}")
        for i, error in enumerate(exc.errors(), 1):
            logger.error(f"   {i}. {error.get('loc', 'unknown')}: {error.get('msg', 'unknown')}")
        return JSONResponse(status_code=422, content={"detail": jsonable_encoder(exc.errors())})

    app.include_router(business_plan_router)

    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
