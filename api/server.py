"""
Lazarus Watchtower API - FastAPI Backend

Endpoints:
- GET  /health              Liveness of the watchtower itself
- POST /heartbeat           Signed "I am alive" from a user
- GET  /status/{address}    Cached deadline / time remaining for one user
- GET  /users               All monitored users (admin)
- POST /liquidation/check   Manual scan trigger (admin)
- GET  /bridges/pending     Settlements not yet seen on the destination vault

Error mapping: ValidationError -> 400, AuthenticationError -> 401,
unknown address -> 404, scan already running -> 409, anything else -> 500.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from lazarus.destination import DestinationMonitor
from lazarus.errors import AuthenticationError, ValidationError
from lazarus.heartbeat_store import HeartbeatRecord, HeartbeatStore
from lazarus.protocol import PROTOCOL_RULES, is_address
from lazarus.relay import HeartbeatRelay
from lazarus.scanner import InactivityScanner
from lazarus.signature import DEFAULT_HEARTBEAT_TEXT

logger = logging.getLogger("lazarus.api")

_DAY_MS = 24 * 60 * 60 * 1000


# ============================================================
# MODELS
# ============================================================

class HeartbeatPayload(BaseModel):
    message: str = Field(DEFAULT_HEARTBEAT_TEXT, max_length=200)
    timestamp: int
    nonce: int


class HeartbeatRequest(BaseModel):
    address: str = Field(..., max_length=42)
    message: HeartbeatPayload
    signature: str = Field(..., max_length=132)


class HeartbeatResponse(BaseModel):
    success: bool
    lastSeen: int
    message: str = "Heartbeat recorded successfully"


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _status_view(record: HeartbeatRecord, now_ms: int) -> dict:
    deadline = record.deadline_ms
    remaining = max(0, deadline - now_ms)
    return {
        "address": record.user_address,
        "lastSeen": record.last_seen,
        "lastSeenISO": _iso(record.last_seen),
        "inactivityPeriod": record.inactivity_period,
        "deadline": deadline,
        "deadlineISO": _iso(deadline),
        "timeRemainingMs": remaining,
        "timeRemainingDays": remaining / _DAY_MS,
        "isAtRisk": remaining < PROTOCOL_RULES.AT_RISK_SECONDS * 1000,
    }


# ============================================================
# SERVER FACTORY
# ============================================================

def create_app(
    store: HeartbeatStore,
    relay: HeartbeatRelay,
    scanner: InactivityScanner,
    destination_monitor: Optional[DestinationMonitor] = None,
    cors_origins: tuple = ("*",),
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """
    Create the watchtower app. Components are built and owned by main.py;
    the app only routes requests to them.
    """
    app = FastAPI(
        title="Lazarus Watchtower",
        description="Dead man's switch: heartbeats in, liquidations out.",
        version="0.1.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def _bad_request(_request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": "Invalid request", "details": str(exc)})

    # ============================================================
    # ROUTES
    # ============================================================

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "timestamp": _iso(int(clock() * 1000)),
            "users": len(store),
            "scanRunning": scanner.scan_in_progress,
        }

    @app.post("/heartbeat", response_model=HeartbeatResponse)
    async def heartbeat(req: HeartbeatRequest):
        """Verify a signed heartbeat and refresh the user's cached deadline."""
        try:
            record = await relay.accept(req.address, req.message.model_dump(), req.signature)
        except ValidationError as e:
            raise HTTPException(400, str(e))
        except AuthenticationError as e:
            raise HTTPException(401, f"Invalid signature: {e}")
        except Exception as e:
            logger.error(f"Error processing heartbeat: {e}", exc_info=True)
            raise HTTPException(500, "Internal server error")
        return HeartbeatResponse(success=True, lastSeen=record.last_seen)

    @app.get("/status/{address}")
    async def status(address: str):
        if not is_address(address):
            raise HTTPException(400, "Invalid address format")
        record = store.get_heartbeat(address)
        if record is None:
            raise HTTPException(404, "No heartbeat record found for this address")
        return _status_view(record, int(clock() * 1000))

    @app.get("/users")
    async def users():
        records = store.get_all_users()
        return {
            "count": len(records),
            "users": [
                {
                    "address": r.user_address,
                    "lastSeen": r.last_seen,
                    "lastSeenISO": _iso(r.last_seen),
                    "inactivityPeriod": r.inactivity_period,
                }
                for r in records
            ],
        }

    @app.post("/liquidation/check")
    async def liquidation_check():
        """Run one scan now and return its batch report."""
        if scanner.scan_in_progress:
            raise HTTPException(409, "Liquidation check already in progress")
        logger.info("Manual liquidation check triggered")
        try:
            report = await scanner.run_once()
        except Exception as e:
            logger.error(f"Error during manual liquidation check: {e}", exc_info=True)
            raise HTTPException(500, f"Liquidation check failed: {e}")
        if report is None:
            raise HTTPException(409, "Liquidation check already in progress")
        return {"success": True, **report.to_dict()}

    @app.get("/bridges/pending")
    async def pending_bridges():
        if destination_monitor is None:
            return {"count": 0, "bridges": []}
        bridges = destination_monitor.get_pending_bridges()
        return {"count": len(bridges), "bridges": [b.to_dict() for b in bridges]}

    return app
