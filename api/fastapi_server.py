import asyncio
import logging
import math
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from config import config
from monitoring.logging_utils import setup_logging
from orchestration.commands import PriceUpdate


logger = logging.getLogger(__name__)

trading_system = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global trading_system
    from main import TradingSystem
    trading_system = TradingSystem()
    task = asyncio.create_task(trading_system.start())
    try:
        yield
    finally:
        if trading_system:
            await trading_system.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


app = FastAPI(title="Markwatch API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(config.section('api').get('cors_origins') or ["*"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _bound(value: float) -> Optional[float]:
    # JSON has no infinity; an open bound is reported as null.
    return None if math.isinf(value) else value


def _limit(requested: Optional[int], default: int) -> int:
    if requested is None:
        return default
    return max(0, min(int(requested), default))


@app.get("/")
async def root():
    return {
        "service": "Markwatch",
        "version": "1.0.0",
        "status": "running" if trading_system and trading_system.running else "stopped"
    }


@app.get("/favicon.ico")
async def favicon():
    return Response(content=b"", media_type="image/x-icon")


@app.get("/health")
async def health():
    if not trading_system:
        return {"status": "starting", "timestamp": _now(), "system_running": False}
    return {
        "status": "healthy",
        "timestamp": _now(),
        "system_running": trading_system.running,
        "connection_state": trading_system.ws_client.state.value,
        "trading_enabled": trading_system.engine.trading_enabled,
        "ai_enabled": trading_system.ai_loop is not None,
    }


@app.get("/api/history/{instrument}")
async def get_history(instrument: str):
    if not trading_system:
        return {"error": "Trading system not initialized"}
    inst = instrument.upper()
    if inst not in trading_system.settings.instruments:
        return {"error": f"Instrument '{instrument}' is not tracked"}
    points = trading_system.history.snapshot(inst)
    return {
        "instrument": inst,
        "window_s": trading_system.history.window(inst),
        "points": [p.to_dict() for p in points],
        "count": len(points),
        "timestamp": _now(),
    }


@app.get("/api/thresholds")
async def get_thresholds():
    if not trading_system:
        return {"error": "Trading system not initialized"}
    monitor = trading_system.monitor
    out = []
    for inst in trading_system.settings.instruments:
        band = monitor.threshold(inst)
        latest = trading_system.history.latest(inst)
        out.append({
            "instrument": inst,
            "lower": _bound(band.lower),
            "upper": _bound(band.upper),
            "debounce_ms": monitor.debounce_for(inst),
            "mark_price": latest.mark_price if latest else None,
        })
    return {"thresholds": out, "count": len(out), "timestamp": _now()}


@app.get("/api/trades")
async def get_trades(limit: Optional[int] = None):
    if not trading_system:
        return {"error": "Trading system not initialized"}
    store = trading_system.trade_store
    trades = await asyncio.to_thread(store.tail, _limit(limit, store.tail_limit))
    return {"trades": trades, "count": len(trades), "timestamp": _now()}


@app.get("/api/ai_decisions")
async def get_ai_decisions(limit: Optional[int] = None):
    if not trading_system:
        return {"error": "Trading system not initialized"}
    store = trading_system.ai_store
    decisions = await asyncio.to_thread(store.tail, _limit(limit, store.tail_limit))
    return {"decisions": decisions, "count": len(decisions), "timestamp": _now()}


@app.get("/api/errors")
async def get_errors(limit: Optional[int] = None):
    if not trading_system:
        return {"error": "Trading system not initialized"}
    store = trading_system.error_store
    errors = await asyncio.to_thread(store.tail, _limit(limit, store.tail_limit))
    return {"errors": errors, "count": len(errors), "timestamp": _now()}


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    if not trading_system:
        await websocket.send_json({"error": "Trading system not initialized"})
        await websocket.close()
        return
    bus = trading_system.bus
    # Each client gets its own coalescing subscription; a slow client only loses stale prices.
    subscription = bus.subscribe(f"ws-{id(websocket)}", policy="coalesce")
    try:
        async for command in subscription:
            payload = command.to_dict()
            if isinstance(command, PriceUpdate):
                payload = {"kind": command.kind, **command.point.to_dict()}
            await websocket.send_json(payload)
    except WebSocketDisconnect:
        logger.debug("Stream client disconnected")
    finally:
        await bus.unsubscribe(subscription)


if __name__ == "__main__":
    import uvicorn
    setup_logging()
    api_cfg = config.section('api')
    uvicorn.run(
        app,
        host=api_cfg.get('host', '0.0.0.0'),
        port=int(api_cfg.get('port', 8000)),
        log_level="info"
    )
