"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.dealflow.api.v1 import distributions, gate, health, progression

router = APIRouter()

router.include_router(health.router)
router.include_router(distributions.router)
router.include_router(gate.router)
router.include_router(progression.router)
