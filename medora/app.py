"""
MEDORA Triage Server — Application Factory
"""

import logging
import time

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from medora import settings

# ── 1. Configure logging ──
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("medora-server")

_startup_time = time.time()

# ── 2. Create FastAPI app ──
app = FastAPI(title="MEDORA WhatsApp Triage")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── 3. Register routers ──
from medora.routers import health, ocr, whatsapp  # noqa: E402

app.include_router(health.router)
app.include_router(whatsapp.router)
app.include_router(ocr.router)


# ── 4. Lifecycle ──
@app.on_event("startup")
async def startup_event():
    logger.info("=" * 60)
    logger.info("MEDORA WhatsApp triage starting")
    logger.info(f"Listening on port: {settings.PORT}")

    from medora.triage.setup import initialize_triage
    await initialize_triage()

    logger.info(f"Total init time: {time.time() - _startup_time:.2f}s")
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    from medora.triage.setup import shutdown_triage
    await shutdown_triage()
