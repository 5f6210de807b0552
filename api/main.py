"""
Recommendations API

Single FastAPI application with route groups:
- /api/signals: Domain event ingestion
- /api/recommendations: Recommendation list, generate and lifecycle actions
- /api/admin: Pipeline traces and queue health
"""

import os
import logging
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from routes import admin, recommendations, signals

API_VERSION = "1.0.0"

app = FastAPI(
    title="Recommendations API",
    description="Recommendation decision pipeline",
    version=API_VERSION,
)

allowed_origins = [
    origin.strip()
    for origin in os.environ.get("CORS_ALLOWED_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health():
    return {"status": "ok", "version": API_VERSION}


app.include_router(signals.router, prefix="/api/signals", tags=["signals"])
app.include_router(recommendations.router, prefix="/api/recommendations", tags=["recommendations"])
app.include_router(admin.router, prefix="/api/admin", tags=["admin"])
