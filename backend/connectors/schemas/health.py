"""Health check schemas."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"]
    version: str
    database: Literal["connected", "disconnected"]
    workers_running: bool = False
    workers: dict[str, Any] = {}
    queue: dict[str, Any] | None = None
