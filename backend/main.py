# backend/main.py — FastAPI + WS + SSE + proxy do QRNG
import asyncio
import os
import json
import logging
import time
from typing import Set, Dict, Optional

import httpx
from fastapi import FastAPI, WebSocket, HTTPException, Request, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.responses import StreamingResponse

from .config import (
    GameConfig, DEV_QRNG_URL, HOST, PORT, QRNG_DEV, QRNG_URL, OUTSHIFT_URL, OUTSHIFT_API_KEY, TICK_FPS,
)
from .engine import EngineEvent, InsufficientBalance, RoundEngine, RoundInProgress
from .entropy import EntropySource

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------------------
# App e CORS
# ------------------------------------------------------------------------------
app = FastAPI()
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# ------------------------------------------------------------------------------
# Estado do jogo / utilidades
# ------------------------------------------------------------------------------
def now_ms() -> int:
    return int(time.time() * 1000)

# Conexões de clientes WS
clients: Set[WebSocket] = set()

async def broadcast(obj: Dict):
    """Envia um JSON para todos os clientes WS conectados."""
    msg = json.dumps(obj)
    dead = []
    for ws in list(clients):
        try:
            await ws.send_text(msg)
        except Exception:
            logger.debug("dropping websocket client", exc_info=True)
            dead.append(ws)
    for ws in dead:
        clients.discard(ws)

# o loop só guarda referências fracas das tasks
_pending: Set[asyncio.Task] = set()

def on_engine_event(event: EngineEvent):
    if not clients:
        return
    task = asyncio.get_running_loop().create_task(broadcast(event.to_dict()))
    _pending.add(task)
    task.add_done_callback(_pending.discard)

engine: RoundEngine = None  # type: ignore[assignment]
_unsubscribe = None

def install_engine(new_engine: RoundEngine) -> RoundEngine:
    """Troca o motor ativo (um por processo) e liga os eventos ao broadcast."""
    global engine, _unsubscribe
    if _unsubscribe is not None:
        _unsubscribe()
    engine = new_engine
    _unsubscribe = engine.subscribe(on_engine_event)
    return engine

install_engine(RoundEngine(GameConfig.from_env(), EntropySource(url=QRNG_URL, dev=QRNG_DEV, dev_url=DEV_QRNG_URL)))

# transporte do proxy QRNG (None = rede real)
qrng_transport: Optional[httpx.AsyncBaseTransport] = None

# ------------------------------------------------------------------------------
# Health, estado e histórico
# ------------------------------------------------------------------------------
@app.get("/health")
def health():
    return {"ok": True, "now": now_ms()}

@app.get("/state")
def state():
    return engine.snapshot()

@app.get("/history")
def history(limit: int = 10):
    data = engine.history[:max(0, limit)]
    return {"rounds": [h.to_dict() for h in data]}  # mais recente primeiro

@app.get("/balance")
def get_balance():
    return {"balance": engine.balance}

# ------------------------------------------------------------------------------
# Jogar / Retirar
# ------------------------------------------------------------------------------
@app.post("/play")
async def play():
    try:
        started = await engine.request_start()
    except InsufficientBalance:
        raise HTTPException(400, "insufficient balance")
    except RoundInProgress:
        raise HTTPException(400, "round in progress")
    return {"ok": True, "started": started, "phase": engine.phase.value, "balance": engine.balance}

@app.post("/abort")
def abort():
    return {"ok": engine.abort(), "phase": engine.phase.value, "balance": engine.balance}

@app.post("/cashout")
def cashout():
    outcome = engine.request_cash_out()
    if outcome is None:
        raise HTTPException(400, "cashout only in running")
    return {"ok": True, "multiplier": outcome.multiplier, "payout": outcome.payout, "balance": engine.balance}

# ------------------------------------------------------------------------------
# Proxy do QRNG (injeta a chave da API)
# ------------------------------------------------------------------------------
@app.post("/api/qrng")
async def qrng_proxy(request: Request):
    body = await request.body()
    headers = {"Content-Type": "application/json", "Accept": "application/json"}
    if OUTSHIFT_API_KEY:
        headers["x-id-api-key"] = OUTSHIFT_API_KEY
    try:
        async with httpx.AsyncClient(timeout=15, transport=qrng_transport) as cli:
            r = await cli.post(OUTSHIFT_URL, content=body, headers=headers)
    except httpx.HTTPError as exc:
        logger.warning("QRNG upstream failed: %s", exc)
        raise HTTPException(502, "qrng upstream unavailable")
    try:
        payload = r.json()
    except ValueError:
        payload = {"error": r.text}
    return JSONResponse(payload, status_code=r.status_code)

# ------------------------------------------------------------------------------
# WebSocket — /ws
# ------------------------------------------------------------------------------
@app.websocket("/ws")
async def ws(ws: WebSocket):
    await ws.accept()
    clients.add(ws)
    try:
        # Na conexão, envia o estado atual
        await ws.send_text(json.dumps({"type": "snapshot", **engine.snapshot()}))
        # Mantém viva
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        clients.discard(ws)

# ------------------------------------------------------------------------------
# SSE (fallback)
# ------------------------------------------------------------------------------
@app.get("/sse")
async def sse():
    async def gen():
        yield f"data: {json.dumps({'type': 'heartbeat', 'now': now_ms()})}\n\n"
        while True:
            await asyncio.sleep(10)
            yield f"data: {json.dumps({'type': 'heartbeat', 'now': now_ms()})}\n\n"
    return StreamingResponse(gen(), media_type="text/event-stream")

# ------------------------------------------------------------------------------
# Loop de quadros (servidor é o relógio)
# ------------------------------------------------------------------------------
async def game_loop():
    """Chama engine.update(dt) ~TICK_FPS vezes por segundo."""
    last = time.monotonic()
    while True:
        await asyncio.sleep(1 / TICK_FPS)
        now = time.monotonic()
        engine.update(now - last)
        last = now

_loop_task: Optional[asyncio.Task] = None

@app.on_event("startup")
async def _startup():
    global _loop_task
    _loop_task = asyncio.create_task(game_loop())

@app.on_event("shutdown")
async def _shutdown():
    global _loop_task
    if _loop_task is not None:
        _loop_task.cancel()
        try:
            await _loop_task
        except asyncio.CancelledError:
            pass
        _loop_task = None

def run():
    import uvicorn
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host=HOST, port=PORT)

if __name__ == "__main__":
    run()
