# Ticket Bridge
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Ticket Bridge.
#
# Ticket Bridge is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
#    You may use, modify, and distribute this file under AGPL-3.0.
#    See LICENSE for the full text.
#
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#    For proprietary use, SaaS deployment, or enterprise licensing.
#    See LICENSE-ENTERPRISE.md or contact info@phoenixlink.co.za
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Ticket Bridge -- Health, Restart & Stats Routes."""

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ticketbridge import __version__
from ticketbridge.bridges.base import ORIGIN, STAFF

router = APIRouter()

PLATFORM_ALIASES = {
    "origin": ORIGIN,
    "telegram": ORIGIN,
    "staff": STAFF,
    "discord": STAFF,
}


class RestartResponse(BaseModel):
    results: dict[str, bool]
    health: dict


def _bridge(request: Request):
    bridge = getattr(request.app.state, "bridge", None)
    if bridge is None:
        raise HTTPException(status_code=503, detail="Bridge not initialised")
    return bridge


@router.get("/health")
async def health_check(request: Request):
    """Liveness plus per-platform connection status."""
    health = _bridge(request).health_check()
    up = [health["origin_platform"], health["staff_platform"]]
    if all(up):
        status = "healthy"
    elif any(up):
        status = "degraded"
    else:
        status = "down"
    body = {"status": status, "version": __version__, **health}
    return JSONResponse(body, status_code=503 if status == "down" else 200)


@router.get("/ready")
async def readiness_check(request: Request):
    """Ready once at least one platform is connected and the bridge is enabled."""
    bridge = _bridge(request)
    health = bridge.health_check()
    if not bridge.enabled or not (health["origin_platform"] or health["staff_platform"]):
        raise HTTPException(status_code=503, detail="Bridge not ready")
    return {"status": "ready", "version": __version__}


@router.post("/api/bridge/restart", response_model=RestartResponse)
async def restart_bridge(request: Request):
    """Restart both platform sessions, e.g. after rotating tokens."""
    bridge = _bridge(request)
    results = await bridge.restart()
    return RestartResponse(results=results, health=bridge.health_check())


@router.post("/api/bridge/restart/{platform}", response_model=RestartResponse)
async def restart_platform(platform: str, request: Request):
    """Restart one platform session."""
    target = PLATFORM_ALIASES.get(platform.lower())
    if target is None:
        raise HTTPException(status_code=404, detail=f"Unknown platform: {platform}")
    bridge = _bridge(request)
    if target == ORIGIN:
        ok = await bridge.restart_origin()
    else:
        ok = await bridge.restart_staff()
    return RestartResponse(results={target: ok}, health=bridge.health_check())


@router.get("/api/bridge/stats")
async def bridge_stats(request: Request):
    """Queue, cache, dedup, webhook and connection counters."""
    return _bridge(request).stats()
