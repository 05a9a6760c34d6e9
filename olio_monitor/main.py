"""Main FastAPI application entry point."""
import os
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from olio_monitor.api.routes import router
from olio_monitor.database import init_db
from olio_monitor.logging_config import configure_logging

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db()
    log.info("service_started", service="olio-monitor")
    yield


app = FastAPI(
    title="Olio Monitor - Report Lifecycle",
    description="Tracks consortium compliance reports from intake to closure: "
                "inspections, clarification requests and authority notices.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api", tags=["Reports"])


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "olio-monitor"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
