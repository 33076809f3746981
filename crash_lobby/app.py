# app.py
"""
Crash Lobby – HTTP entry point

Responsibilities:
- FastAPI HTTP server
- Request validation (Pydantic)
- Error mapping (InvalidState -> 409, ValidationError -> 422)
- Wiring: coordinator + scheduler + session collaborator on app.state

Without an injected collaborator the app runs standalone against the local
SQL ledger (db.py / sessions.LedgerSessionBackend).
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from crash_lobby import db
from crash_lobby.config import GameConfig
from crash_lobby.coordinator import LobbyCoordinator
from crash_lobby.errors import InvalidState, ValidationError
from crash_lobby.fairness import ProvablyFair
from crash_lobby.scheduler import AsyncioScheduler, TimerScheduler
from crash_lobby.sessions import LedgerSessionBackend, SessionCollaborator

# =====================================================
# LOGGING
# =====================================================

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("crash_lobby.app")

# =====================================================
# DATA MODELS (Pydantic)
# =====================================================


class JoinRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    address: str = Field(..., min_length=1, max_length=64)
    # Floats in, Decimal inside the coordinator; range checks live there too
    bet_amount: float = Field(..., alias="betAmount")
    predicted_multiplier: float = Field(..., alias="predictedMultiplier")


class JoinResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    round_id: str = Field(..., alias="roundId")
    status: str


# =====================================================
# DEPENDENCIES
# =====================================================


def get_coordinator(request: Request) -> LobbyCoordinator:
    return request.app.state.coordinator


def get_ledger_backend(request: Request) -> LedgerSessionBackend:
    backend = request.app.state.collaborator
    if not isinstance(backend, LedgerSessionBackend):
        raise HTTPException(status_code=404, detail="Accounts are managed by the external session backend")
    return backend


# =====================================================
# APP FACTORY
# =====================================================


def create_app(
    config: Optional[GameConfig] = None,
    collaborator: Optional[SessionCollaborator] = None,
    scheduler: Optional[TimerScheduler] = None,
    fairness: Optional[ProvablyFair] = None,
    database_url: Optional[str] = None,
) -> FastAPI:
    config = config or GameConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Builds the coordinator on startup, cancels its timers on shutdown.
        """
        backend = collaborator
        engine = None
        if backend is None:
            logger.info("Startup: Initializing local ledger database...")
            engine = db.create_engine(database_url or db.DATABASE_URL)
            await db.init_db(engine)
            backend = LedgerSessionBackend(db.create_sessionmaker(engine))

        timers = scheduler or AsyncioScheduler()
        app.state.collaborator = backend
        app.state.scheduler = timers
        app.state.coordinator = LobbyCoordinator(backend, timers, config, fairness)

        round_ = app.state.coordinator.current_round
        logger.info(f"Startup: round {round_.round_id} WAITING, seed hash {round_.commitment.server_seed_hash}")

        yield

        logger.info("Shutdown: Cancelling timers...")
        await app.state.coordinator.shutdown()
        if isinstance(timers, AsyncioScheduler):
            await timers.close()
        if engine is not None:
            await engine.dispose()

    app = FastAPI(
        title="Crash Lobby API",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    register_routes(app)
    return app


# =====================================================
# ERROR HANDLERS
# =====================================================


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(InvalidState)
    async def invalid_state_handler(_, exc: InvalidState):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"error": "Round State Conflict", "detail": str(exc)},
        )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(_, exc: ValidationError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"error": "Invalid Bet", "detail": str(exc)},
        )


# =====================================================
# ROUTES
# =====================================================


def register_routes(app: FastAPI) -> None:
    @app.get("/")
    async def root() -> Dict[str, str]:
        return {"message": "Crash Lobby API", "status": "ok"}

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "healthy"}

    @app.post("/join", response_model=JoinResponse, response_model_by_alias=True)
    async def join(payload: JoinRequest, coordinator: LobbyCoordinator = Depends(get_coordinator)):
        """
        Join the current round, or update an existing bet while it is still open.
        """
        result = await coordinator.on_join(payload.address, payload.bet_amount, payload.predicted_multiplier)
        return JoinResponse(round_id=result["round_id"], status=result["status"].value)

    @app.get("/round")
    async def current_round(
        address: Optional[str] = None,
        coordinator: LobbyCoordinator = Depends(get_coordinator),
    ) -> Dict[str, Any]:
        """
        Polling endpoint for the round state.
        Pass ?address= to see your own bet before the crash.
        """
        return coordinator.snapshot(viewer=address)

    @app.get("/rounds/history")
    async def round_history(coordinator: LobbyCoordinator = Depends(get_coordinator)) -> List[Dict[str, Any]]:
        return coordinator.history()

    @app.get("/rounds/{round_id}/verify")
    async def verify_round(round_id: str, coordinator: LobbyCoordinator = Depends(get_coordinator)) -> Dict[str, Any]:
        """
        Recompute a finished round's crash point from its revealed seed.
        """
        rnd = coordinator.find_round(round_id)
        if rnd is None:
            raise HTTPException(status_code=404, detail="Round not found in history")
        if rnd.crash_point is None:
            raise HTTPException(status_code=409, detail=f"Round ended {rnd.status.value} before crashing")

        commitment = rnd.commitment
        expected = coordinator.fairness.crash_point(commitment)
        return {
            "roundId": rnd.round_id,
            "serverSeed": commitment.server_seed,
            "serverSeedHash": commitment.server_seed_hash,
            "clientSeed": commitment.client_seed,
            "nonce": commitment.nonce,
            "crashPoint": float(rnd.crash_point),
            "recomputedCrashPoint": float(expected),
            "verified": coordinator.fairness.verify(commitment, rnd.crash_point),
        }

    @app.get("/accounts/{address}")
    async def account_balance(address: str, backend: LedgerSessionBackend = Depends(get_ledger_backend)) -> Dict[str, Any]:
        address = address.strip().lower()
        balance = await backend.balance_of(address)
        return {"address": address, "balance": float(balance)}


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
