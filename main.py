#!/usr/bin/env python3
"""
FastAPI application entry point for the Relocation Planner API
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from src.planner.api.endpoints import router as planner_router, shutdown_dependencies

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Relocation Planner API starting (store=%s)", os.getenv("PROFILE_STORE", "firestore"))
    yield
    shutdown_dependencies()
    logger.info("👋 Relocation Planner API stopped")


app = FastAPI(
    title="Relocation Planner API",
    description="AI relocation plans, document explanations and consulate lookup for immigrants",
    version="0.1.0",
    lifespan=lifespan,
)

# Browser clients call the API directly
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(planner_router)


@app.get("/")
async def root():
    return {"message": "Relocation Planner API", "status": "operational"}


@app.get("/health")
async def health_check():
    """Liveness probe; does not touch the model or the store."""
    return {"status": "healthy", "service": "relocation-planner-api"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")),
                reload=os.getenv("RELOAD", "false").lower() == "true")
