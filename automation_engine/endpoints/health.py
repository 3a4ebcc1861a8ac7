"""Endpoints de health, stats y métricas del motor."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ..service import AutomationService, get_service

router = APIRouter(tags=["health"])


@router.get("/health")
def health():
    """Liveness: el proceso responde."""
    return {"status": "ok"}


@router.get("/ready")
def ready(service: Optional[AutomationService] = Depends(get_service)):
    """Readiness: BD y MQTT disponibles."""
    if service is None:
        return JSONResponse(status_code=503, content={"healthy": False, "reason": "Service not started"})
    status = service.health_check()
    return JSONResponse(status_code=200 if status.get("healthy") else 503, content=status)


@router.get("/stats")
def stats(service: Optional[AutomationService] = Depends(get_service)):
    """Estadísticas de ingesta, reglas y despacho."""
    if service is None:
        return {"running": False}
    return service.stats


@router.get("/metrics")
def metrics():
    """Métricas Prometheus."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
