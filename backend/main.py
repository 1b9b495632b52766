import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from measure_engine.api.routes import codegen, logic, overrides, validation
from measure_engine.core.config import settings
from measure_engine.core.logging import configure_logging

logger = logging.getLogger("measure_engine")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging(settings.LOG_LEVEL)
    logger.info("Starting %s...", settings.PROJECT_NAME)
    yield
    # Shutdown
    logger.info("Shutdown complete.")


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Compiles measure logic trees to CQL and SQL and evaluates test patients against them",
    version="0.1.0",
    lifespan=lifespan
)

# Configure CORS
allowed_origins = [
    settings.FRONTEND_URL,
    "http://localhost:3000",
    "http://localhost:5173",  # vite dev server
]
# Add any additional origins from ALLOWED_ORIGINS env var
if settings.ALLOWED_ORIGINS:
    allowed_origins.extend([o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(
    codegen.router,
    prefix=f"{settings.API_V1_STR}/codegen",
    tags=["Code Generation"]
)

app.include_router(
    logic.router,
    prefix=f"{settings.API_V1_STR}/logic",
    tags=["Logic Tree"]
)

app.include_router(
    overrides.router,
    prefix=f"{settings.API_V1_STR}/overrides",
    tags=["Overrides"]
)

app.include_router(
    validation.router,
    prefix=f"{settings.API_V1_STR}/validation",
    tags=["Validation"]
)


@app.get("/")
async def root():
    return {
        "name": settings.PROJECT_NAME,
        "version": "0.1.0",
        "status": "running",
        "docs": "/docs"
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
