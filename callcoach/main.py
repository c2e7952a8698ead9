from __future__ import annotations

import base64
import contextlib
import traceback
from typing import Any, Optional

import orjson
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from .asr import make_transcriber
from .errors import InvalidTurnRequest
from .gateway import CoachGateway
from .knowledge import KnowledgeBase
from .llm import LLM
from .logging import RichLogger
from .models import TurnRequest
from .registry import TurnRegistry
from .settings import settings
from .store import ConversationStore
from .tts import ElevenLabsTTS
from .wire import NO_STORE_HEADERS, R_AUDIO_B64, R_MIME, R_TEXT


def _json(body: Any, status_code: int = 200) -> Response:
    return Response(
        content=orjson.dumps(body),
        status_code=status_code,
        media_type="application/json",
        headers=NO_STORE_HEADERS,
    )


def build_gateway() -> CoachGateway:
    llm = LLM()
    registry = TurnRegistry(
        dedupe_window_s=settings.dedupe_window_s,
        record_ttl_s=settings.dedupe_record_ttl_s,
    )
    return CoachGateway(
        llm=llm,
        registry=registry,
        knowledge=KnowledgeBase(llm.embed),
        tts=ElevenLabsTTS(),
        store=ConversationStore(),
        transcriber=make_transcriber(),
    )


def create_app(gateway: Optional[CoachGateway] = None) -> FastAPI:
    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        gw = gateway or build_gateway()
        app.state.gateway = gw
        print("🚀 CallCoach Server Starting")
        print(f"🤖 LLM: {settings.llm_model} | 📝 ASR: "
              f"{settings.faster_whisper_model if settings.local_asr else settings.transcribe_model}")
        print(f"♻️  Dedupe window: {gw.registry.dedupe_window_s}s | 🧹 sweep every {settings.sweep_interval_s}s")
        print(f"🌐 {settings.host}:{settings.port}")
        print("=" * 60)
        gw.registry.start_sweeper(settings.sweep_interval_s)
        try:
            yield
        finally:
            await gw.registry.stop_sweeper()
            with contextlib.suppress(Exception):
                await gw.drain()

    app = FastAPI(title="callcoach", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["POST", "GET", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Accept"],
    )

    def _gw(request: Request) -> CoachGateway:
        return request.app.state.gateway

    # ----------------------------
    # Coach turn
    # ----------------------------
    @app.post("/api/call-coach")
    async def call_coach(request: Request):
        try:
            body = orjson.loads(await request.body() or b"{}")
        except orjson.JSONDecodeError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        try:
            result = await _gw(request).handle(TurnRequest.from_payload(body))
        except InvalidTurnRequest as e:
            return _json({"error": str(e)}, status_code=400)
        except Exception as e:
            print(f"[{RichLogger._format_time()}] {RichLogger.error(f'call-coach: {e!r}')}")
            traceback.print_exc()
            return _json({"error": "Server error"}, status_code=500)
        return _json(result.to_json())

    # ----------------------------
    # Transcription proxy
    # ----------------------------
    @app.post("/api/transcribe")
    async def transcribe(request: Request):
        content_type = request.headers.get("content-type", "")
        if "multipart/form-data" not in content_type:
            return _json({"error": "Expected multipart/form-data"}, status_code=400)
        form = await request.form()
        upload = form.get("audio") or form.get("file")
        if upload is None or isinstance(upload, str):
            return _json({"error": "Missing audio file", "hint": "Send multipart/form-data with 'audio' or 'file'."},
                         status_code=400)
        audio = await upload.read()
        if not audio:
            return _json({"error": "Missing audio file"}, status_code=400)
        try:
            out = await _gw(request).transcribe(audio, upload.content_type or "", upload.filename)
        except Exception as e:
            print(f"[{RichLogger._format_time()}] {RichLogger.error(f'transcribe: {e!r}')}")
            return _json({"error": str(e) or "Transcription failed"}, status_code=502)
        return _json(out)

    # ----------------------------
    # Greeting
    # ----------------------------
    @app.post("/api/call-greeting")
    async def call_greeting(request: Request):
        try:
            body = orjson.loads(await request.body() or b"{}")
        except orjson.JSONDecodeError:
            body = {}
        name = str((body or {}).get("name") or "").strip() if isinstance(body, dict) else ""
        try:
            turn = await _gw(request).greeting(name)
        except Exception as e:
            print(f"[{RichLogger._format_time()}] {RichLogger.error(f'greeting: {e!r}')}")
            traceback.print_exc()
            return _json({"error": "Server error"}, status_code=500)
        out: dict[str, Any] = {R_TEXT: turn.text}
        if turn.audio_bytes:
            out[R_AUDIO_B64] = base64.b64encode(turn.audio_bytes).decode("ascii")
            out[R_MIME] = turn.mime_type or "audio/mpeg"
        return _json(out)

    # ----------------------------
    # Health & minimal metrics view
    # ----------------------------
    @app.get("/health")
    def health():
        return {"ok": True}

    @app.get("/metrics")
    def metrics_summary(request: Request):
        return _json(_gw(request).turn_log.summary())

    @app.get("/metrics/turns")
    def get_turns(request: Request):
        """Get all individual turn metrics."""
        return _json(_gw(request).turn_log.events())

    @app.delete("/metrics")
    def reset_metrics(request: Request):
        """Clear all metrics data by truncating the metrics file."""
        try:
            _gw(request).turn_log.clear()
            return {"message": "Metrics cleared successfully"}
        except OSError as e:
            return _json({"error": f"Failed to clear metrics: {str(e)}"}, status_code=500)

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("callcoach.main:app", host=settings.host, port=settings.port)
