"""
WhatsApp Webhook — Meta Cloud API endpoints.

Endpoints:
  GET  /webhook/whatsapp        Subscription verification handshake
  GET  /webhook/whatsapp/ping   Routing check
  POST /webhook/whatsapp        Inbound messages

The POST always answers 200 straight away.  Parsed messages go onto the
per-user queue and are processed in the background, so a slow oracle
call never delays the acknowledgement and never triggers a redelivery.
"""

from __future__ import annotations

import json
import logging
import time

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse, Response

from medora import settings
from medora.triage.ingest.whatsapp_ingest import WhatsAppIngest

logger = logging.getLogger("triage.api.whatsapp")

router = APIRouter(prefix="/webhook/whatsapp", tags=["whatsapp"])

_ingest = WhatsAppIngest()


@router.get("")
async def verify_webhook(request: Request):
    params = request.query_params
    mode = params.get("hub.mode")
    token = params.get("hub.verify_token")
    challenge = params.get("hub.challenge", "")
    token_ok = bool(settings.WHATSAPP_VERIFY_TOKEN) and token == settings.WHATSAPP_VERIFY_TOKEN
    logger.info("Webhook verify: mode=%s token_ok=%s", mode, token_ok)
    if mode == "subscribe" and token_ok:
        return PlainTextResponse(challenge, status_code=200)
    return Response(status_code=403)


@router.get("/ping")
async def ping():
    logger.info("Ping /webhook/whatsapp/ping received")
    return {"ok": True, "at": int(time.time() * 1000)}


@router.post("")
async def receive_webhook(request: Request):
    from medora.triage.setup import get_queue_manager

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        logger.warning("Webhook body is not valid JSON: %s", exc)
        return Response(status_code=200)

    try:
        messages = _ingest.parse(body)
    except Exception as exc:
        logger.error("WhatsApp ingest error: %s", exc, exc_info=True)
        return Response(status_code=200)

    queue_manager = get_queue_manager()
    if queue_manager is None:
        if messages:
            logger.error("Triage not initialized — %d inbound messages dropped", len(messages))
        return Response(status_code=200)

    for message in messages:
        try:
            await queue_manager.enqueue(message)
        except Exception as exc:
            logger.error("Failed to enqueue %s: %s", message.message_id, exc, exc_info=True)

    return Response(status_code=200)
