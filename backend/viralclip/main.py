"""FastAPI app with API routes"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from viralclip.config import get_settings
from viralclip.database import init_db
from viralclip.log_setup import configure_logging
from viralclip.routes import router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Set up logging and the database on startup."""
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Starting app...")

    if await init_db():
        logger.info("Database initialized")
    else:
        logger.error("Database not initialized, check DATABASE_URL")

    yield

    logger.info("Shutting down...")


app = FastAPI(title="Viral Clip Generator", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api")
