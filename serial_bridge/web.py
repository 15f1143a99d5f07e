"""HTTP front end: JSON control routes and a Server-Sent Events stream"""

import asyncio
import contextlib
import logging
from typing import Annotated, AsyncIterator, Awaitable, Callable

import fastapi
import fastapi.responses
import fastapi.staticfiles
import msgspec
import pydantic

from serial_bridge import _config
from serial_bridge import _connection
from serial_bridge import _events
from serial_bridge import _manager

log = logging.getLogger("serial_bridge.web")

STREAM_QUEUE_SIZE = 2000


class OpenRequest(pydantic.BaseModel):
    path: str
    baud: int = _connection.DEFAULT_BAUD


class SendRequest(pydantic.BaseModel):
    payload: str


router = fastapi.APIRouter(prefix="/serial")


def get_manager(request: fastapi.Request) -> _manager.SessionManager:
    return request.app.state.manager


Manager = Annotated[_manager.SessionManager, fastapi.Depends(get_manager)]


@router.get("/ports")
async def ports(manager: Manager):
    found = await asyncio.to_thread(manager.list_ports)
    log.debug("GET /serial/ports -> %d ports", len(found))
    return msgspec.to_builtins(found)


@router.post("/open")
async def open_port(body: OpenRequest, manager: Manager):
    log.info("POST /serial/open %s (baud=%d)", body.path, body.baud)
    return msgspec.to_builtins(manager.open(body.path, body.baud))


@router.post("/close")
async def close_port(manager: Manager):
    log.info("POST /serial/close")
    return msgspec.to_builtins(manager.close())


@router.post("/send")
async def send(body: SendRequest, manager: Manager):
    log.info("POST /serial/send %r", body.payload)
    return msgspec.to_builtins(manager.send(body.payload))


@router.get("/status")
async def status(manager: Manager):
    return msgspec.to_builtins(manager.status())


@router.get("/stream")
async def stream(request: fastapi.Request, manager: Manager):
    keepalive = manager.config.keepalive
    events = stream_events(manager, keepalive, request.is_disconnected)
    return fastapi.responses.StreamingResponse(
        events,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


def format_event(event: _events.SessionEvent) -> str:
    """One SSE frame: named event plus its JSON payload"""

    data = msgspec.json.encode(event).decode()
    return f"event: {event.kind}\ndata: {data}\n\n"


async def stream_events(
    manager: _manager.SessionManager,
    keepalive: float,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncIterator[str]:
    """Yields SSE frames for every session event until the client leaves.

    Subscriptions are released when the generator is closed, which happens
    when the client disconnects and the response is torn down. A ": ping"
    comment goes out after 'keepalive' quiet seconds.
    """

    queue: asyncio.Queue = asyncio.Queue(STREAM_QUEUE_SIZE)

    def deliver(event: _events.SessionEvent) -> None:
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            log.warning("Stream client too slow, dropping %s event", event.kind)

    subs = [manager.subscribe(kind, deliver) for kind in _events.EVENT_KINDS]
    log.info("Stream client connected")
    try:
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=keepalive)
            except asyncio.TimeoutError:
                if is_disconnected and await is_disconnected():
                    break
                yield ": ping\n\n"
                continue
            yield format_event(event)
    finally:
        for unsubscribe in subs:
            unsubscribe()
        log.info("Stream client disconnected")


def create_app(
    config: _config.BridgeConfig,
    manager: _manager.SessionManager | None = None,
    *,
    autostart: bool = True,
) -> fastapi.FastAPI:
    """Builds the app; the session manager lives exactly as long as it runs"""

    @contextlib.asynccontextmanager
    async def lifespan(app: fastapi.FastAPI):
        async with manager or _manager.SessionManager(config) as owned:
            app.state.manager = owned
            if autostart:
                await owned.start()
            yield

    app = fastapi.FastAPI(title="serial-bridge", lifespan=lifespan)
    app.include_router(router)

    @app.get("/healthz")
    async def healthz():
        return {"ok": True, "ts": _events.now_ms()}

    if config.static_dir:
        static = fastapi.staticfiles.StaticFiles(
            directory=config.static_dir, html=True, check_dir=False
        )
        app.mount("/", static, name="static")

    return app
