"""API service for the validation workflow builder."""

from fastapi import FastAPI
from services.api.routes.builder import router as builder_router
from services.api.middleware import CorrelationIdMiddleware
from shared.logging_config import setup_logging

setup_logging("builder-api")

app = FastAPI(title="Validation Workflow Builder API", version="1.0.0")
app.add_middleware(CorrelationIdMiddleware)

app.include_router(builder_router, prefix="/builder", tags=["Builder"])


@app.get("/")
async def root():
    return {"service": "builder-api", "status": "running"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
