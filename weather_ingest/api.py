"""API HTTP del servicio de ingesta (FastAPI).

Superficie mínima de lectura + acciones de operador. Toda la lógica vive
en :class:`weather_ingest.service.WeatherIngestService`.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from .domain.errors import BulkDeleteError, StorePersistError
from .domain.reading import TransportConfig
from .service import WeatherIngestService

logger = logging.getLogger(__name__)

router = APIRouter()


class MqttConfigIn(BaseModel):
    url: str = Field(min_length=1)
    port: int = Field(gt=0, lt=65536)
    topic: str = Field(min_length=1)
    username: Optional[str] = None
    password: Optional[str] = None
    is_active: bool = True
    id: str = "default"

    def to_domain(self) -> TransportConfig:
        return TransportConfig(
            id=self.id,
            url=self.url,
            port=self.port,
            topic=self.topic,
            username=self.username,
            password=self.password,
            is_active=self.is_active,
        )


def _service(request: Request) -> WeatherIngestService:
    return request.app.state.service


@router.get("/health")
def health():
    """Liveness probe."""
    return {"status": "ok"}


@router.get("/status")
def status(request: Request):
    return _service(request).status()


@router.get("/readings")
def list_readings(
    request: Request,
    day: Optional[date] = Query(None, alias="date"),
    limit: int = Query(50, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    """Lecturas de la ventana, más nuevas primero.

    Con ``date`` filtra al día UTC indicado (vista de histórico).
    """
    window = _service(request).window
    if day is not None:
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        readings = window.between(start, start + timedelta(days=1))
    else:
        readings = list(window.snapshot())

    newest_first = readings[::-1]
    page = newest_first[offset:offset + limit]
    return {
        "total": len(newest_first),
        "limit": limit,
        "offset": offset,
        "last_updated": window.last_updated(),
        "items": [r.to_dict() for r in page],
    }


@router.get("/readings/current")
def current_reading(request: Request):
    window = _service(request).window
    current = window.current()
    return {
        "current": current.to_dict() if current else None,
        "last_updated": window.last_updated(),
    }


@router.delete("/readings")
async def clear_readings(request: Request):
    try:
        await _service(request).clear_historical_data()
    except BulkDeleteError as e:
        logger.error("[API] Clear historical data failed: %s", e)
        raise HTTPException(status_code=500, detail=f"Failed to clear historical data: {e}")
    return {"status": "cleared"}


@router.post("/mqtt/reconnect")
async def reconnect(request: Request):
    service = _service(request)
    await service.reconnect()
    return {"status": "reconnecting", "transport": service.transport.status()}


@router.put("/mqtt/config")
async def update_mqtt_config(payload: MqttConfigIn, request: Request):
    try:
        saved = await _service(request).update_transport_config(payload.to_domain())
    except StorePersistError as e:
        logger.error("[API] Could not save MQTT config: %s", e)
        raise HTTPException(status_code=500, detail="Failed to save MQTT config")
    return saved.redacted()


def create_app(service: Optional[WeatherIngestService] = None) -> FastAPI:
    """App factory. El lifespan arranca y para el servicio."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = app.state.service
        await svc.start()
        try:
            yield
        finally:
            await svc.stop()

    app = FastAPI(title="Weather Ingest Service", version="0.1.0", lifespan=lifespan)
    app.state.service = service or WeatherIngestService()
    app.include_router(router)
    return app
