from fastapi import APIRouter

from medora import settings

router = APIRouter()


@router.get("/")
async def root():
    return {
        "status": "MEDORA WhatsApp triage is running",
        "endpoints": {
            "whatsapp_webhook": "/webhook/whatsapp",
            "whatsapp_ping": "/webhook/whatsapp/ping",
            "ocr": "/ocr",
            "status": "/status",
        },
    }


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"ok": True, "service": "medora-triage", "port": settings.PORT}


@router.get("/status")
async def triage_status():
    """Active sessions, queues and channels."""
    from medora.triage.setup import (
        get_dispatcher_registry,
        get_orchestrator,
        get_queue_manager,
        get_session_store,
    )

    orchestrator = get_orchestrator()
    if orchestrator is None:
        return {"status": "not_initialized"}

    queue_manager = get_queue_manager()
    store = get_session_store()
    registry = get_dispatcher_registry()
    return {
        "status": "ok",
        "active_queues": queue_manager.active_count if queue_manager else 0,
        "active_sessions": getattr(store, "active_count", 0),
        "pending_handoffs": orchestrator.pending_background_tasks,
        "registered_channels": registry.registered_channels if registry else [],
        "completed_policy": orchestrator.completed_policy,
    }
