"""
Bulk Export API

Run with:
    uvicorn bulkexport.main:create_app --factory --port 8000
"""

import logging
import os
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bulkexport.jobs_routes import data_router, router as export_router
from bulkexport.service import ExportService, build_service
from bulkexport.settings import load_settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def create_app(service: Optional[ExportService] = None) -> FastAPI:
    """
    Build the API around an ExportService.
    Without one, the service is wired from environment settings.
    """
    if service is None:
        service = build_service(load_settings())

    app = FastAPI(
        title="Bulk Export API",
        description="Asynchronous bulk export of member claims data",
        version=VERSION
    )
    app.state.export_service = service

    extra_origins = os.environ.get("CORS_ORIGINS", "")
    allowed_origins = [o.strip() for o in extra_origins.split(",") if o.strip()] or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_methods=["GET"],
        allow_headers=["*"],
        expose_headers=["Content-Location", "X-Progress"],
    )

    app.include_router(export_router)
    app.include_router(data_router)

    @app.get("/_health")
    async def health():
        """Liveness check."""
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": VERSION,
            "queue_backend": service.settings.queue_backend,
        }

    logger.info(f"Bulk Export API ready (queue backend: {service.settings.queue_backend})")
    return app
