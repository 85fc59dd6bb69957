"""
Document Analysis API — analyse an uploaded report or image outside WhatsApp.

  POST /ocr   {filename, content_base64, mime_type?} → {ok, result}
"""

from __future__ import annotations

import base64
import binascii
import logging
import mimetypes
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from medora.triage.oracle import NullOracle

logger = logging.getLogger("triage.api.ocr")

router = APIRouter(prefix="/ocr", tags=["ocr"])


class DocumentUploadRequest(BaseModel):
    filename: str
    content_base64: str  # with or without data URI prefix
    mime_type: Optional[str] = None


@router.post("")
async def analyze_document(request: DocumentUploadRequest):
    from medora.triage.setup import get_oracle

    oracle = get_oracle()
    if oracle is None or isinstance(oracle, NullOracle):
        raise HTTPException(status_code=503, detail="GEMINI_API_KEY not configured")

    encoded = request.content_base64
    if "," in encoded:
        encoded = encoded.split(",", 1)[1]
    try:
        base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="content_base64 is not valid base64")

    mime_type = (
        request.mime_type
        or mimetypes.guess_type(request.filename)[0]
        or "application/octet-stream"
    )

    try:
        result = await oracle.document_analyze(encoded, mime_type)
    except Exception as exc:
        logger.error("Document analysis failed for %s: %s", request.filename, exc)
        result = None

    if result is None:
        raise HTTPException(status_code=500, detail="processing_failed")

    logger.info("Analyzed %s (%s)", request.filename, mime_type)
    return {"ok": True, "filename": request.filename, "mime_type": mime_type, "result": result}
