"""FastAPI application serving the live horizon dashboard."""

from __future__ import annotations

import asyncio
import logging
import webbrowser
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from jinja2 import Environment, FileSystemLoader, select_autoescape
from uvicorn import Config, Server

from app.settings import Settings, load_settings
from app.stats_client import StatsService
from horizon.core import INTERVAL_CHOICES, KNOWN_METRICS, REFRESH_CHOICES
from horizon.engine import StatsEngine
from horizon.exceptions import RosterLoadError

from . import STATIC_DIR, TEMPLATES_DIR
from .render import RenderSurface
from .schemas import OptionsResponse, SelectionRequest, StatsSnapshot

LOGGER = logging.getLogger(__name__)

PUSH_POLL_S = 1.0

jinja_env = Environment(
    loader=FileSystemLoader(TEMPLATES_DIR),
    autoescape=select_autoescape(["html", "xml"]),
)

router = APIRouter()

EngineFactory = Callable[[], StatsEngine]


class ViewerPresence:
    """Visibility reported by each connected page; visible if any page is."""

    def __init__(self) -> None:
        self._pages: Dict[int, bool] = {}

    @property
    def any_visible(self) -> bool:
        return any(self._pages.values())

    def __len__(self) -> int:
        return len(self._pages)

    def update(self, page_id: int, hidden: bool) -> bool:
        self._pages[page_id] = not hidden
        return self.any_visible

    def drop(self, page_id: int) -> bool:
        self._pages.pop(page_id, None)
        return self.any_visible


def build_engine(settings: Settings) -> StatsEngine:
    service = StatsService.from_config(settings.viewer)
    surface = RenderSurface(settings.display.colors, extent=settings.display.extent)
    return StatsEngine.from_settings(settings, service, surface=surface)


def render_template(name: str, **context) -> HTMLResponse:
    template = jinja_env.get_template(name)
    return HTMLResponse(template.render(**context))


def _engine(request: Request) -> StatsEngine:
    return request.app.state.engine


def _options(engine: StatsEngine) -> OptionsResponse:
    metrics = list(KNOWN_METRICS)
    if engine.selector.metric_name not in metrics:
        metrics.insert(0, engine.selector.metric_name)
    intervals = sorted(set(INTERVAL_CHOICES) | {engine.selector.step_seconds})
    refresh_rates = sorted(set(REFRESH_CHOICES) | {engine.refresh_ms})
    return OptionsResponse(
        metrics=metrics,
        intervals=intervals,
        refresh_rates=refresh_rates,
        selected={
            "metric": engine.selector.metric_name,
            "interval": engine.selector.step_seconds,
            "refresh_ms": engine.refresh_ms,
        },
    )


@router.get("/ui", response_class=HTMLResponse)
async def ui_index(request: Request) -> HTMLResponse:
    engine = _engine(request)
    context = {
        "request": request,
        "options": _options(engine),
        "error": engine.error,
        "nodes": engine.roster,
    }
    return render_template("index.html", **context)


@router.get("/ui/api/frame", response_class=JSONResponse)
async def api_frame(request: Request) -> JSONResponse:
    engine = _engine(request)
    if engine.error:
        raise HTTPException(status_code=503, detail=engine.error)
    frame = engine.surface.frame() if engine.surface is not None else None
    if frame is None:
        raise HTTPException(status_code=503, detail="Charts are not ready yet")
    return JSONResponse(frame.model_dump())


@router.get("/ui/api/focus", response_class=JSONResponse)
async def api_focus(request: Request, column: int = Query(..., ge=0)) -> JSONResponse:
    engine = _engine(request)
    if engine.surface is None or engine.surface.context is None:
        raise HTTPException(status_code=503, detail=engine.error or "Charts are not ready yet")
    try:
        focus = engine.surface.focus(column)
    except IndexError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse(focus.model_dump())


@router.get("/ui/api/stats", response_class=JSONResponse)
async def api_stats(request: Request) -> JSONResponse:
    engine = _engine(request)
    payload = StatsSnapshot(rows=engine.snapshot, error=engine.error)
    return JSONResponse(payload.model_dump())


@router.get("/ui/api/options", response_class=JSONResponse)
async def api_options(request: Request) -> JSONResponse:
    return JSONResponse(_options(_engine(request)).model_dump())


@router.get("/ui/api/context", response_class=JSONResponse)
async def api_context(request: Request) -> JSONResponse:
    engine = _engine(request)
    if engine.context is None:
        raise HTTPException(status_code=503, detail=engine.error or "No active context")
    payload = engine.context.snapshot()
    payload["gate"] = engine.gate.state.value
    return JSONResponse(payload)


@router.post("/ui/api/selection", response_class=JSONResponse)
async def api_selection(request: Request, selection: SelectionRequest) -> JSONResponse:
    engine = _engine(request)
    try:
        engine.select(
            metric_name=selection.metric,
            step_seconds=selection.interval,
            refresh_ms=selection.refresh_ms,
        )
    except RosterLoadError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return JSONResponse(_options(engine).model_dump())


async def _read_page_messages(websocket: WebSocket, engine: StatsEngine, presence: ViewerPresence) -> None:
    page_id = id(websocket)
    while True:
        try:
            message = await websocket.receive_json()
        except WebSocketDisconnect:
            return
        except ValueError:
            LOGGER.debug("Ignoring malformed message from page %s", page_id)
            continue
        if not isinstance(message, dict) or message.get("type") != "visibility":
            continue
        hidden = bool(message.get("hidden"))
        engine.set_visibility(hidden=not presence.update(page_id, hidden))
        await websocket.send_json({"type": "visibility", "hidden": hidden, "gate": engine.gate.state.value})


@router.websocket("/ui/ws")
async def ui_socket(websocket: WebSocket) -> None:
    engine: StatsEngine = websocket.app.state.engine
    presence: ViewerPresence = websocket.app.state.presence
    await websocket.accept()
    reader = asyncio.create_task(_read_page_messages(websocket, engine, presence))
    sent_version = -1
    error_sent = False
    try:
        while not reader.done():
            surface = engine.surface
            if engine.error:
                if not error_sent:
                    await websocket.send_json({"type": "error", "message": engine.error})
                    error_sent = True
            elif surface is not None:
                frame = surface.frame()
                if frame is None:
                    sent_version = surface.version
                elif frame.version != sent_version:
                    await websocket.send_json({"type": "frame", "frame": frame.model_dump()})
                    sent_version = frame.version
            if surface is not None:
                seen = sent_version if sent_version >= 0 else surface.version
                await surface.wait_for_update(seen, timeout=PUSH_POLL_S)
            else:
                await asyncio.sleep(PUSH_POLL_S)
    except WebSocketDisconnect:
        LOGGER.debug("Page %s disconnected", id(websocket))
    finally:
        reader.cancel()
        if presence.drop(id(websocket)) is False:
            engine.set_visibility(hidden=True)


def create_app(
    engine_factory: Optional[EngineFactory] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if engine_factory is not None:
            engine = engine_factory()
        else:
            engine = build_engine(settings or load_settings())
        app.state.engine = engine
        app.state.presence = ViewerPresence()
        try:
            await engine.initialize()
        except RosterLoadError as exc:
            LOGGER.error("Dashboard starting in error state: %s", exc)
        try:
            yield
        finally:
            engine.shutdown()

    application = FastAPI(title="Node Stats Horizon", lifespan=lifespan)
    application.mount("/ui/static", StaticFiles(directory=STATIC_DIR), name="ui-static")
    application.include_router(router)

    @application.get("/", include_in_schema=False)
    async def root_redirect() -> RedirectResponse:
        return RedirectResponse(url="/ui")

    return application


app = create_app()


def start_ui(host: str, port: int, open_browser: bool = True, settings: Optional[Settings] = None) -> None:
    """Start the FastAPI UI server via uvicorn."""

    config = Config(app=create_app(settings=settings), host=host, port=port, log_level="info")
    server = Server(config=config)

    async def _serve() -> None:
        if open_browser:
            url = f"http://{host}:{port}/ui"
            asyncio.get_running_loop().call_later(1.0, webbrowser.open, url)
        await server.serve()

    asyncio.run(_serve())
