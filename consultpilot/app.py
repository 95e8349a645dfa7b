"""
ConsultPilot Server — Application Factory
"""

import os
import time
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# ── 1. Configure logging ──
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("consultpilot-server")

_startup_time = time.time()
logger.info("Server initialization started...")

# ── 2. Create FastAPI app ──
app = FastAPI(title="ConsultPilot Server")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── 3. Register routers ──
from consultpilot.routers import consultations, health

app.include_router(health.router)
app.include_router(consultations.router)


# ── 4. Startup / shutdown events ──
@app.on_event("startup")
async def startup_event():
    port = os.environ.get("PORT", "8080")
    logger.info("=" * 60)
    logger.info("ConsultPilot Server Starting")
    logger.info(f"Listening on port: {port}")

    # Initialize pipeline (blocking, needed before serving requests)
    try:
        from consultpilot.pipeline.setup import initialize_pipeline
        await initialize_pipeline()
        logger.info("Consultation pipeline initialized")
    except Exception as e:
        logger.warning(f"Pipeline failed to start — running without it: {e}")

    logger.info(f"Total init time: {time.time() - _startup_time:.2f}s")
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    try:
        from consultpilot.pipeline.setup import shutdown_pipeline
        await shutdown_pipeline()
    except Exception as e:
        logger.warning(f"Pipeline shutdown failed: {e}")
