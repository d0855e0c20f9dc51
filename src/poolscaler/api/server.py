#!/usr/bin/env python3
"""
FastAPI server exposing reconciler status
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from .. import __version__

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class APIServer:
    """FastAPI server for reconciler status endpoints"""

    def __init__(self, service, config: Dict[str, Any]):
        """
        Initialize API server

        Args:
            service: ReconcilerService owning the pool loops
            config: API configuration (host, port)
        """
        self.service = service
        self.config = config
        self.app = FastAPI(
            title="Pool Scaler API",
            description="Status of worker pool capacity reconcilers",
            version=__version__
        )
        self._setup_routes()

    def _get_loop(self, name: str):
        loop = self.service.loops.get(name)
        if loop is None:
            raise HTTPException(status_code=404, detail=f"Unknown pool '{name}'")
        return loop

    def _setup_routes(self):
        """Setup API routes"""

        @self.app.get("/")
        async def root():
            return {
                "service": "poolscaler",
                "version": __version__,
                "pools": sorted(self.service.loops),
                "timestamp": _now()
            }

        @self.app.get("/health")
        async def health_check():
            """Healthy while at least one pool loop is running"""
            running = [name for name, loop in self.service.loops.items() if loop.running]
            healthy = bool(running)
            state_store = None
            if self.service.state_store is not None:
                store_ok = await run_in_threadpool(self.service.state_store.health_check)
                state_store = "ok" if store_ok else "unavailable"
            return JSONResponse(
                content={
                    "status": "healthy" if healthy else "unhealthy",
                    "running_pools": sorted(running),
                    "state_store": state_store,
                    "timestamp": _now()
                },
                status_code=200 if healthy else 503
            )

        @self.app.get("/pools")
        async def list_pools():
            pools = []
            for name in sorted(self.service.loops):
                status = self.service.loops[name].status()
                state = status["state"] or {}
                pools.append({
                    "pool": name,
                    "running": status["running"],
                    "current_size": state.get("current_size"),
                    "pending_delta": state.get("pending_delta"),
                    "circuit": (status["circuit"] or {}).get("state"),
                    "last_intent": status["last_intent"],
                })
            return {"pools": pools, "count": len(pools), "timestamp": _now()}

        @self.app.get("/pools/{name}")
        async def get_pool(name: str):
            return self._get_loop(name).status()

        @self.app.get("/pools/{name}/signals")
        async def get_signals(name: str, limit: int = 50):
            """Recent signals, newest last"""
            self._get_loop(name)
            events = self.service.event_bus.recent(name, limit)
            return {
                "pool": name,
                "signals": [event.to_dict() for event in events],
                "count": len(events),
            }

        @self.app.get("/pools/{name}/history")
        async def get_history(name: str, limit: int = 50):
            """Scaling history from MongoDB, newest first"""
            self._get_loop(name)
            if self.service.history is None:
                raise HTTPException(status_code=404, detail="Scaling history is not enabled")
            records = await run_in_threadpool(self.service.history.recent, name, limit)
            return {
                "pool": name,
                "events": [
                    {**record.to_dict(), "timestamp": record.timestamp.isoformat()}
                    for record in records
                ],
                "count": len(records),
            }

        @self.app.post("/pools/{name}/evaluate")
        async def evaluate_pool(name: str):
            """Run one reconcile tick right away"""
            self._get_loop(name)
            try:
                intent = await self.service.run_tick(name)
            except Exception as e:
                logger.error(f"Manual evaluation of pool '{name}' failed: {e}")
                raise HTTPException(status_code=500, detail=str(e))
            if intent is None:
                raise HTTPException(status_code=500, detail=self.service.loops[name].last_error)
            return {
                "pool": name,
                "intent": intent.model_dump(mode="json"),
                "timestamp": _now()
            }

    def run(self, host: str = "0.0.0.0", port: int = 8080):
        """Run the API server (blocking)"""
        logger.info(f"Starting API server on {host}:{port}")
        uvicorn.run(self.app, host=host, port=port, log_level="warning")
