import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from evidentia.config import settings
from evidentia.db_init import init_database
from evidentia.dependencies import ModelClientProvider
from evidentia.errors import EvidentiaError
from evidentia.models import HealthResponse
from evidentia.routers import papers, stages
from evidentia.services.cache_store import build_cache_store
from evidentia.services.coordinator import PipelineCoordinator

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database, cache store and coordinator on startup"""
    logger.info("Initializing database...")
    init_database()
    logger.info("Database initialized")

    client_provider = ModelClientProvider()
    app.state.client_provider = client_provider
    app.state.coordinator = PipelineCoordinator(build_cache_store(), client_provider.get)
    if not settings.has_api_key:
        logger.warning("OPENAI_API_KEY is not set; stage requests will fail until it is configured")

    yield

    logger.info("Shutting down...")
    await app.state.coordinator.wait_for_persistence()
    await client_provider.close()


# Create FastAPI app
app = FastAPI(
    title="Evidentia",
    description="Prompt-orchestration pipeline for scientific paper analysis",
    version=VERSION,
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(stages.router)
app.include_router(papers.router)


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    return HealthResponse(
        status="healthy",
        version=VERSION,
        database="connected"
    )


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Evidentia API",
        "version": VERSION,
        "docs": "/docs"
    }


# Error handlers
@app.exception_handler(EvidentiaError)
async def evidentia_error_handler(request: Request, exc: EvidentiaError):
    if exc.status_code >= 500:
        logger.error(f"{request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message}
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if not errors or errors[0].get("type") == "json_invalid":
        return JSONResponse(status_code=400, content={"error": "Invalid request body."})

    first = errors[0]
    location = [str(part) for part in first.get("loc", ()) if part != "body"]
    field = ".".join(location)
    message = f"Invalid field '{field}': {first.get('msg')}" if field else "Invalid request body."
    return JSONResponse(
        status_code=400,
        content={"error": message}
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail}
    )


@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    logger.exception(f"Internal server error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "evidentia.main:app",
        host=settings.host,
        port=settings.port,
        reload=True
    )
