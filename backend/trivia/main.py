import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .config import configure_logging, settings
from .errors import GameError, InvalidPayloadError, SessionNotFoundError
from .game import GameController
from .hub import ConnectionHub
from .registry import SessionRegistry
from .schemas import MediaOut, PublicSessionOut
from .storage import MediaStore

logger = logging.getLogger(__name__)


def require_admin(x_admin_key: Optional[str] = Header(default=None)):
    if x_admin_key != settings.ADMIN_KEY:
        raise HTTPException(status_code=401, detail="Invalid admin key")


def get_controller(request: Request) -> GameController:
    return request.app.state.controller


def get_media_store(request: Request) -> MediaStore:
    return request.app.state.media


def create_app(
    registry: SessionRegistry | None = None,
    media: MediaStore | None = None,
) -> FastAPI:
    registry = registry or SessionRegistry()
    hub = ConnectionHub()
    controller = GameController(registry, hub)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        yield
        await controller.shutdown()
        logger.info("shut down with %s live sessions", len(registry))

    app = FastAPI(title="Live Trivia API", lifespan=lifespan)
    app.state.registry = registry
    app.state.hub = hub
    app.state.controller = controller
    app.state.media = media or MediaStore()

    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_origin_regex=settings.CORS_ORIGIN_REGEX or None,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        return {"status": "ok", "sessions": len(registry)}

    @app.get("/api/session/{code}", response_model=PublicSessionOut)
    async def get_session(code: str, ctl: GameController = Depends(get_controller)):
        s = ctl.registry.get_by_code(code)
        if not s:
            raise HTTPException(404, SessionNotFoundError.default_message)
        current = s.current_index + 1 if s.current_question is not None else None
        return PublicSessionOut.from_players(s.code, s.status.value, list(s.players.values()), current, len(s.questions))

    @app.post("/api/media", response_model=MediaOut)
    async def upload_media(
        owner: str = Form(...),
        file: UploadFile = File(...),
        store: MediaStore = Depends(get_media_store),
        _: None = Depends(require_admin),
    ):
        if not store.configured:
            raise HTTPException(status_code=500, detail="Image storage is not configured")

        data = await file.read()
        try:
            url = await store.upload(owner, file.filename or "upload", data, file.content_type)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("media upload failed for %s", owner)
            raise HTTPException(status_code=500, detail="Failed to upload image") from exc

        return MediaOut(url=url)

    @app.websocket("/ws")
    async def game_socket(websocket: WebSocket):
        await websocket.accept()
        conn_id = hub.register(websocket)
        logger.info("connection %s opened", conn_id)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000))
                # text or binary frames both carry JSON; parse_inbound decides
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                try:
                    await controller.handle(conn_id, raw)
                except GameError as exc:
                    log = logger.warning if isinstance(exc, InvalidPayloadError) else logger.info
                    log("connection %s: %s (%s)", conn_id, exc.code, exc.message)
                    await hub.send_to_connection(conn_id, "error", {"code": exc.code, "message": exc.message})
        except WebSocketDisconnect:
            pass
        finally:
            logger.info("connection %s closed", conn_id)
            await controller.disconnect(conn_id)

    return app


app = create_app()
