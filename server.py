#!/usr/bin/env python3
"""
xrelay Server
Cross-ledger HTLC secret relayer: EVM escrows <-> Sui shared lockers.

Endpoints:
  GET  /api/status            - Health check, store and watcher state
  POST /api/locks             - Register an escrow ref (409 on conflict)
  GET  /api/locks/{digest}    - Correlation entry for a hashlock digest
  GET  /api/entries           - List correlation entries
  POST /api/reveal            - Forward a known secret (operator replay)
"""

import os
import sys
import logging
from typing import Optional, Dict, Any, List

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from xrelay.config import load_config
from xrelay.core import EscrowRef, EscrowRole, EntryState, parse_variant
from xrelay.errors import ConfigError, CorrelationConflict, StoreCorruption
from xrelay.service import RelayService

# =============================================================================
# LOGGING
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)

# Set by __main__ or on startup
_service: Optional[RelayService] = None


def get_service() -> RelayService:
    if _service is None:
        raise HTTPException(503, "Relay service not running")
    return _service


def create_service() -> RelayService:
    """Build the relay service from the environment. Exits on bad config."""
    try:
        return RelayService(load_config())
    except ConfigError as e:
        log.critical(f"Configuration error: {e}")
        sys.exit(1)
    except StoreCorruption as e:
        log.critical(f"Correlation store unusable: {e}")
        sys.exit(1)


# =============================================================================
# MODELS
# =============================================================================

class VariantModel(BaseModel):
    algorithm: str = Field(..., example="keccak256")
    digest: str = Field(..., example="0x...")


class LockRequest(BaseModel):
    algorithm: str = Field("keccak256", example="keccak256")
    digest: str = Field(..., example="0x...")           # hashlock of the escrow
    ledger_id: str = Field(..., example="ethereum")
    locator: str = Field(..., example="0x...")          # escrow address / locker object id
    role: str = Field(..., example="source")            # source | destination
    deadline: Optional[int] = None                      # unix seconds
    params: Dict[str, Any] = {}                         # EVM immutables, Sui recipient...
    linked: List[VariantModel] = []                     # other variants of the same secret
    secret: Optional[str] = None                        # preimage, links every variant


class RevealRequest(BaseModel):
    ledger_id: str = Field(..., example="sui")
    secret: str = Field(..., example="0x...")


# =============================================================================
# APP SETUP
# =============================================================================

app = FastAPI(
    title="xrelay",
    description="Cross-ledger HTLC secret relayer",
    version="0.1.0",
)


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/api/status")
async def get_status():
    """Health check."""
    service = get_service()
    return {"status": "ok", **service.status()}


# Plain def: may block on a ledger claim, so FastAPI runs it in its threadpool
@app.post("/api/locks")
def register_lock(req: LockRequest):
    """Record one side of a swap."""
    service = get_service()

    if req.ledger_id not in service.ledgers:
        raise HTTPException(400, f"Unknown ledger: {req.ledger_id}")
    try:
        variant = parse_variant(req.algorithm, req.digest)
        linked = [parse_variant(v.algorithm, v.digest) for v in req.linked]
        role = EscrowRole(req.role)
        secret = bytes.fromhex(req.secret[2:] if req.secret.startswith("0x") else req.secret) \
            if req.secret else None
    except ValueError as e:
        raise HTTPException(400, f"Invalid lock: {e}")

    ref = EscrowRef(
        ledger_id=req.ledger_id,
        locator=req.locator,
        role=role,
        deadline=req.deadline,
        params=req.params,
    )

    try:
        entry = service.register_lock(variant, ref, linked, secret=secret)
    except CorrelationConflict as e:
        raise HTTPException(409, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))

    return entry.to_dict()


@app.get("/api/locks/{digest}")
async def get_lock(digest: str):
    """Correlation entry reachable from a digest."""
    entry = get_service().store.lookup(digest)
    if entry is None:
        raise HTTPException(404, "Entry not found")
    return entry.to_dict()


@app.get("/api/entries")
async def list_entries(state: Optional[str] = Query(None)):
    """List correlation entries, optionally filtered by state."""
    if state is not None:
        try:
            EntryState(state)
        except ValueError:
            raise HTTPException(400, f"Unknown state: {state}")

    entries = get_service().store.entries()
    if state is not None:
        entries = [e for e in entries if e.state.value == state]
    return {"count": len(entries), "entries": [e.to_dict() for e in entries]}


# Plain def: blocks on the claim submission
@app.post("/api/reveal")
def reveal(req: RevealRequest):
    """Forward a secret as if it was observed on `ledger_id`."""
    service = get_service()
    if req.ledger_id not in service.ledgers:
        raise HTTPException(400, f"Unknown ledger: {req.ledger_id}")
    try:
        outcome = service.reveal(req.ledger_id, req.secret)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return {"outcome": outcome.value}


@app.on_event("startup")
async def startup_event():
    """Start watchers, coordinator workers and the retry driver."""
    global _service
    if _service is None:
        _service = create_service()
    _service.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    if _service:
        _service.stop()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    _service = create_service()
    port = int(os.environ.get("PORT", 8080))
    log.info(f"Starting xrelay on port {port}")
    uvicorn.run(app, host="0.0.0.0", port=port)
