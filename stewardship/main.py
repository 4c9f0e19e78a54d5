"""FastAPI application for the stewardship compliance service."""

import logging
from contextlib import asynccontextmanager

import logfire
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .database import init_db
from .routes import router
from .settings import API_PREFIX, CORS_ORIGINS, LOGFIRE_TOKEN

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    logger.info("Database initialized")
    yield


app = FastAPI(
    title="Stewardship Compliance API",
    description="Collection-site requirements, offsets and reallocations for stewardship programs",
    version="0.1.0",
    lifespan=lifespan,
)

# Configure Logfire for observability (after app creation)
if LOGFIRE_TOKEN:
    logfire.configure()
    logfire.instrument_fastapi(app)

# CORS for the dashboard
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "Stewardship Compliance API", "api": API_PREFIX}


app.include_router(router)
