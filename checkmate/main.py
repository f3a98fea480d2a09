"""
FastAPI application entry point for the Checkmate grading API.

This is the main application file that configures and runs the FastAPI server.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .database import init_db, close_db
from .api.v0 import grading as grading_v0

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def setup_tracing():
    """Configure LangSmith tracing based on settings."""
    if settings.langchain_tracing_v2.lower() == "true":
        logger.info("Enabling LangSmith tracing...")
        os.environ["LANGCHAIN_TRACING_V2"] = "true"
        os.environ["LANGCHAIN_ENDPOINT"] = settings.langchain_endpoint
        if settings.langchain_api_key:
            os.environ["LANGCHAIN_API_KEY"] = settings.langchain_api_key
        if settings.langchain_project:
            os.environ["LANGCHAIN_PROJECT"] = settings.langchain_project
        logger.info(f"LangSmith project: {os.environ.get('LANGCHAIN_PROJECT')}")
    else:
        logger.info("LangSmith tracing is disabled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting Checkmate grading API...")
    setup_tracing()

    # Teacher memory must exist before the first request
    await init_db()
    logger.info("Database initialized")

    yield

    # Shutdown
    logger.info("Shutting down Checkmate grading API...")
    await close_db()
    logger.info("Database connections closed")


app = FastAPI(
    title="Checkmate Grading API",
    description="""
    Automated grading of handwritten Hebrew exams using Vision AI.

    ## Features

    * **Grading**: Extract question/answer segments from scanned pages and score them against a rubric
    * **Manual grades**: Digitize teacher marks (V, X, -2, 90) already on the page
    * **Training**: Harvest teacher corrections into the teacher memory
    * **Smart grading**: Use past teacher corrections as scoring guidance

    ## Endpoints

    All grading endpoints are under `/api/v0/grading/`
    """,
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register API routers
app.include_router(grading_v0.router)


@app.get("/", tags=["health"])
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Checkmate Grading API",
        "version": "0.1.0",
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health", tags=["health"])
async def health_check():
    """Health check endpoint for container orchestration."""
    return {"status": "healthy"}
