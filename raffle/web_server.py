"""FastAPI web server exposing the raffle to hosts and dashboards."""

from __future__ import annotations

import asyncio
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from raffle import __version__
from raffle.blockchain.custodian import InMemoryCustodian
from raffle.blockchain.networks import is_development_chain
from raffle.blockchain.vrf import VRFCoordinatorMock
from raffle.lottery.errors import (
    InsufficientStake,
    OracleUnavailable,
    PayoutFailed,
    PayoutNotPending,
    RaffleError,
    RoundNotOpen,
    UnknownRequest,
    UpkeepNotNeeded,
)
from raffle.lottery.event_manager import (
    ENTERED,
    PAYOUT_FAILED,
    RAFFLE_REFUNDED,
    REQUESTED_RANDOMNESS,
    ROUND_UPDATE,
    WINNER_PICKED,
)
from raffle.lottery.models import LiveFeedItem, RoundSnapshot
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

ERROR_STATUS = {
    InsufficientStake: 400,
    UpkeepNotNeeded: 400,
    RoundNotOpen: 409,
    PayoutNotPending: 409,
    UnknownRequest: 404,
    PayoutFailed: 503,
    OracleUnavailable: 503,
}

BROADCAST_EVENTS = (ENTERED, REQUESTED_RANDOMNESS, WINNER_PICKED, RAFFLE_REFUNDED, PAYOUT_FAILED, ROUND_UPDATE)


class EnterRequest(BaseModel):
    player: str
    amount_wei: int = Field(ge=0)


class CancelRequest(BaseModel):
    reason: str = "cancelled by operator"


class FulfillRequest(BaseModel):
    request_id: int
    random_words: Optional[List[int]] = None


class RaffleWebServer:
    """HTTP and WebSocket gateway for the raffle service."""

    def __init__(self, config: Dict[str, Any], components) -> None:
        self.config = config
        self.components = components
        self.engine = components.engine
        self.operator = components.operator
        self._events = components.events

        self.app = FastAPI(
            title="Raffle API",
            description="Entry, upkeep and settlement endpoints for the raffle service",
            version=__version__,
        )

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._broadcast_queue: Optional[asyncio.Queue[Tuple[str, Dict[str, Any] | None]]] = None
        self._broadcast_task: Optional[asyncio.Task[None]] = None
        self._ws_lock: Optional[asyncio.Lock] = None
        self._listeners_registered = False
        self._websockets: Set[WebSocket] = set()
        self._server = None

        self._setup_middleware()
        self._setup_routes()

    # ------------------------------------------------------------------
    # FastAPI scaffolding
    # ------------------------------------------------------------------
    def _setup_middleware(self) -> None:
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @self.app.exception_handler(RaffleError)
        async def raffle_error_handler(request: Request, exc: RaffleError) -> JSONResponse:
            status_code = ERROR_STATUS.get(type(exc), 400)
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
            return JSONResponse(
                status_code=status_code,
                content={"error": type(exc).__name__, "detail": str(exc)},
            )

    def _setup_routes(self) -> None:  # noqa: C901
        # ------------------------------------------------------------------
        # Health & status
        # ------------------------------------------------------------------
        @self.app.get("/api/health")
        async def health_check() -> Dict[str, Any]:
            return {
                "status": "ok",
                "timestamp": datetime.utcnow().isoformat(),
                "components": {
                    "web": True,
                    "keeper": self.operator.get_status()["status"],
                    "raffle": self.engine.get_raffle_state().name,
                },
            }

        @self.app.get("/api/status")
        async def system_status() -> Dict[str, Any]:
            history = self._events.get_round_history(limit=5)
            return {
                "timestamp": datetime.utcnow().isoformat(),
                "network": self.components.network,
                "raffle": self.engine.get_status(),
                "keeper": self.operator.get_status(),
                "recent_history": [self._serialize_history_round(item) for item in history],
                "websocket_connections": len(self._websockets),
            }

        # ------------------------------------------------------------------
        # Raffle state
        # ------------------------------------------------------------------
        @self.app.get("/api/raffle")
        async def get_raffle() -> Dict[str, Any]:
            response = self.engine.get_status()
            response["players"] = self.engine.get_players()
            return response

        @self.app.get("/api/raffle/players")
        async def get_players() -> Dict[str, Any]:
            players = self.engine.get_players()
            stakes = self.engine.get_stakes_by_player()
            return {
                "round_id": self.engine.get_round_id(),
                "players": players,
                "stakes": [{"address": address, "totalAmountWei": amount} for address, amount in stakes.items()],
                "total_players": len(players),
                "total_amount_wei": sum(stakes.values()),
            }

        @self.app.get("/api/raffle/players/{index}")
        async def get_player(index: int) -> Dict[str, Any]:
            try:
                return {"index": index, "player": self.engine.get_player(index)}
            except IndexError:
                raise HTTPException(status_code=404, detail=f"No player at index {index}")

        @self.app.get("/api/raffle/upkeep")
        async def check_upkeep() -> Dict[str, Any]:
            return self.engine.check_upkeep().as_dict()

        @self.app.post("/api/raffle/enter")
        async def enter_raffle(request: EnterRequest) -> Dict[str, Any]:
            custodian = self.components.custodian
            if isinstance(custodian, InMemoryCustodian):
                try:
                    custodian.collect(request.player, request.amount_wei)
                except ValueError as exc:
                    raise HTTPException(status_code=402, detail=str(exc))
                try:
                    index = await asyncio.to_thread(self.engine.enter, request.player, request.amount_wei)
                except RaffleError:
                    # Hand the stake back; the entry was never recorded
                    custodian.transfer(request.player, request.amount_wei)
                    raise
            else:
                index = await asyncio.to_thread(self.engine.enter, request.player, request.amount_wei)
            return {"status": "entered", "index": index, "round_id": self.engine.get_round_id()}

        @self.app.post("/api/raffle/upkeep")
        async def perform_upkeep() -> Dict[str, Any]:
            request_id = await asyncio.to_thread(self.engine.perform_upkeep)
            return {"status": "requested", "request_id": request_id}

        @self.app.post("/api/raffle/payout/retry")
        async def retry_payout() -> Dict[str, Any]:
            winner = await asyncio.to_thread(self.engine.retry_payout)
            return {"status": "paid", "winner": winner}

        @self.app.post("/api/raffle/cancel")
        async def cancel_round(request: CancelRequest) -> Dict[str, Any]:
            refunded = await asyncio.to_thread(self.engine.cancel_round, request.reason)
            return {"status": "refunded", "total_refunded_wei": refunded}

        @self.app.post("/api/oracle/fulfill")
        async def fulfill_request(request: FulfillRequest) -> Dict[str, Any]:
            oracle = self.components.oracle
            if not (is_development_chain(self.components.network["name"]) and isinstance(oracle, VRFCoordinatorMock)):
                raise HTTPException(status_code=403, detail="Manual fulfillment is only available on development chains")
            if request.random_words is None:
                result = await asyncio.to_thread(oracle.fulfill_random_words, request.request_id, self.engine.consumer)
            else:
                result = await asyncio.to_thread(
                    oracle.fulfill_random_words_with_override,
                    request.request_id,
                    self.engine.consumer,
                    request.random_words,
                )
            return asdict(result)

        # ------------------------------------------------------------------
        # History, feed and configuration
        # ------------------------------------------------------------------
        @self.app.get("/api/history")
        async def get_round_history(limit: int = 50) -> Dict[str, Any]:
            limit = max(1, min(limit, 200))
            rounds = [self._serialize_history_round(item) for item in self._events.get_round_history(limit=limit)]
            return {
                "rounds": rounds,
                "summary": {
                    "total_rounds": len(rounds),
                    "settled_rounds": sum(1 for r in rounds if r["final_state"] == "WINNER_PICKED"),
                    "refunded_rounds": sum(1 for r in rounds if r["final_state"] == "REFUNDED"),
                    "total_volume_wei": sum(r["total_pot_wei"] for r in rounds),
                },
                "pagination": {"limit": limit, "returned": len(rounds)},
                "timestamp": datetime.utcnow().isoformat(),
            }

        @self.app.get("/api/activities")
        async def get_live_feed(limit: int = 50) -> Dict[str, Any]:
            limit = max(1, min(limit, 200))
            feed = self._events.get_live_feed(limit=limit)
            return {"activities": [self._serialize_activity(item) for item in reversed(feed)]}

        @self.app.get("/api/config")
        async def get_config() -> Dict[str, Any]:
            return {
                "config": {
                    "entranceFeeWei": self.engine.get_entrance_fee(),
                    "interval": self.engine.get_interval(),
                    "subscriptionId": self.engine.get_subscription_id(),
                    "numWords": self.engine.get_num_words(),
                    "requestConfirmations": self.engine.get_request_confirmations(),
                    "callbackGasLimit": self.engine.config.callback_gas_limit,
                    "gasLane": self.engine.config.gas_lane,
                },
                "network": self.components.network,
                "timestamp": datetime.utcnow().isoformat(),
            }

        # ------------------------------------------------------------------
        # WebSocket endpoint
        # ------------------------------------------------------------------
        @self.app.websocket("/ws/raffle")
        async def websocket_endpoint(websocket: WebSocket) -> None:
            await websocket.accept()
            if self._ws_lock is None:
                self._ws_lock = asyncio.Lock()
            async with self._ws_lock:
                self._websockets.add(websocket)
            logger.info("WebSocket client connected (%s total)", len(self._websockets))
            try:
                await websocket.send_json({"type": "snapshot", "payload": self._build_initial_snapshot()})
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                pass
            finally:
                async with self._ws_lock:
                    self._websockets.discard(websocket)
                logger.info("WebSocket client disconnected (%s remaining)", len(self._websockets))

    # ------------------------------------------------------------------
    # Lifecycle management
    # ------------------------------------------------------------------
    async def start(self, host: str = "0.0.0.0", port: int = 6080) -> None:
        import uvicorn

        logger.info("Starting raffle web server on %s:%s", host, port)
        self._loop = asyncio.get_running_loop()
        if self._broadcast_queue is None:
            self._broadcast_queue = asyncio.Queue()
        if self._ws_lock is None:
            self._ws_lock = asyncio.Lock()
        self._register_event_listeners()
        if self._broadcast_task is None:
            self._broadcast_task = asyncio.create_task(self._broadcast_loop(), name="raffle-web-broadcast")

        config = uvicorn.Config(self.app, host=host, port=port, log_level="info", access_log=True)
        self._server = uvicorn.Server(config)
        try:
            await self._server.serve()
        finally:
            logger.info("Raffle web server stopped")

    async def stop(self) -> None:
        logger.info("Stopping raffle web server")
        if self._server is not None:
            self._server.should_exit = True
        if self._broadcast_task:
            self._broadcast_task.cancel()
            try:
                await self._broadcast_task
            except asyncio.CancelledError:
                pass
            self._broadcast_task = None
        if self._ws_lock is None:
            self._ws_lock = asyncio.Lock()
        async with self._ws_lock:
            for websocket in list(self._websockets):
                try:
                    await websocket.close(code=1001, reason="Server shutdown")
                except RuntimeError as exc:
                    logger.debug("Error closing websocket: %s", exc)
            self._websockets.clear()

    # ------------------------------------------------------------------
    # Event listeners & broadcasting
    # ------------------------------------------------------------------
    def _register_event_listeners(self) -> None:
        if self._listeners_registered:
            return
        for event in BROADCAST_EVENTS:
            self._events.add_listener(event, lambda payload, evt=event: self._enqueue_broadcast(evt, payload))
        self._listeners_registered = True

    def _enqueue_broadcast(self, event_type: str, payload: Dict[str, Any] | None) -> None:
        if not self._broadcast_queue or not self._loop:
            return
        try:
            self._loop.call_soon_threadsafe(self._broadcast_queue.put_nowait, (event_type, payload))
            logger.debug("Enqueued broadcast for %s", event_type)
        except RuntimeError:
            logger.debug("Failed to enqueue broadcast for %s", event_type)

    async def _broadcast_loop(self) -> None:
        assert self._broadcast_queue is not None
        while True:
            event_type, payload = await self._broadcast_queue.get()
            try:
                await self._broadcast_to_clients(event_type, payload)
            except Exception as exc:
                logger.exception("Broadcast loop error: %s", exc)

    async def _broadcast_to_clients(self, event_type: str, payload: Dict[str, Any] | None) -> None:
        message = {"type": event_type, "payload": payload, "timestamp": datetime.utcnow().isoformat()}
        async with self._ws_lock:
            if not self._websockets:
                return
            to_remove: List[WebSocket] = []
            for websocket in self._websockets:
                try:
                    await websocket.send_json(message)
                except (RuntimeError, WebSocketDisconnect) as exc:
                    logger.debug("WebSocket send failed: %s", exc)
                    to_remove.append(websocket)
            for websocket in to_remove:
                self._websockets.discard(websocket)

    def _build_initial_snapshot(self) -> Dict[str, Any]:
        return {
            "raffle": self.engine.get_status(),
            "players": self.engine.get_players(),
            "history": [self._serialize_history_round(item) for item in self._events.get_round_history(limit=10)],
            "live_feed": [self._serialize_activity(item) for item in reversed(self._events.get_live_feed(limit=20))],
            "keeper": self.operator.get_status(),
        }

    # ------------------------------------------------------------------
    # Serialization helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _serialize_history_round(snapshot: RoundSnapshot) -> Dict[str, Any]:
        return {
            "round_id": snapshot.round_id,
            "final_state": snapshot.final_state,
            "total_pot_wei": snapshot.total_pot,
            "participant_count": snapshot.participant_count,
            "winner": snapshot.winner,
            "request_id": snapshot.request_id,
            "finished_at": snapshot.finished_at,
            "refund_reason": snapshot.refund_reason,
        }

    @staticmethod
    def _serialize_activity(item: LiveFeedItem) -> Dict[str, Any]:
        return {
            "activity_id": item.get_item_id(),
            "type": item.event_type,
            "message": item.message,
            "details": item.details,
            "timestamp": item.event_time,
        }
