from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Optional

# Load .env if present
try:
    from dotenv import load_dotenv, find_dotenv  # type: ignore
    load_dotenv(find_dotenv(usecwd=True), override=False)
except Exception:
    pass

def _get_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return v.lower() in ("1", "true", "yes", "on")

def _get_float(key: str, default: float) -> float:
    v = os.getenv(key)
    if v is None or not v.strip():
        return default
    return float(v)

@dataclass(frozen=True)
class Settings:
    host: str = os.getenv("CALLCOACH_HOST", "0.0.0.0")
    port: int = int(os.getenv("CALLCOACH_PORT", "8080"))

    # Call client
    server_url: str = os.getenv("CALLCOACH_SERVER_URL", "http://127.0.0.1:8080")
    sample_rate: int = int(os.getenv("CALLCOACH_SAMPLE_RATE", "16000"))
    frame_ms: int = int(os.getenv("CALLCOACH_FRAME_MS", "20"))
    device_id_file: str = os.getenv("CALLCOACH_DEVICE_ID_FILE", "~/.callcoach_device_id")

    # Feature flags
    want_audio: bool = _get_bool("CALLCOACH_WANT_AUDIO", True)
    log_system_events: bool = _get_bool("CALLCOACH_LOG_SYSTEM_EVENTS", False)
    local_asr: bool = _get_bool("CALLCOACH_LOCAL_ASR", False)

    # OpenAI
    openai_api_key: Optional[str] = os.getenv("OPENAI_API_KEY")
    llm_model: str = os.getenv("CALLCOACH_LLM_MODEL", "gpt-4o-mini")
    embed_model: str = os.getenv("CALLCOACH_EMBED_MODEL", "text-embedding-3-small")
    transcribe_model: str = os.getenv("CALLCOACH_TRANSCRIBE_MODEL", "gpt-4o-mini-transcribe")
    faster_whisper_model: str = os.getenv("CALLCOACH_FASTER_WHISPER_MODEL", "base.en")
    llm_log: bool = _get_bool("CALLCOACH_LLM_LOG", True)

    # Decoding knobs (keep replies from repeating themselves)
    temperature: float = _get_float("CALLCOACH_TEMPERATURE", 0.7)
    frequency_penalty: float = _get_float("CALLCOACH_FREQUENCY_PENALTY", 0.4)
    presence_penalty: float = _get_float("CALLCOACH_PRESENCE_PENALTY", 0.3)

    # ElevenLabs
    elevenlabs_api_key: Optional[str] = os.getenv("ELEVENLABS_API_KEY")
    elevenlabs_voice_id: Optional[str] = os.getenv("ELEVENLABS_VOICE_ID")
    elevenlabs_model_id: str = os.getenv("ELEVENLABS_MODEL_ID", "eleven_turbo_v2")
    elevenlabs_base_url: str = os.getenv("ELEVENLABS_BASE_URL", "https://api.elevenlabs.io")

    # Pinecone (data-plane host of the index, e.g. https://idx-xxxx.svc.pinecone.io)
    pinecone_api_key: Optional[str] = os.getenv("PINECONE_API_KEY")
    pinecone_index_host: Optional[str] = os.getenv("PINECONE_INDEX_HOST")
    pinecone_namespace: Optional[str] = os.getenv("PINECONE_NAMESPACE") or None

    # Supabase
    supabase_url: Optional[str] = os.getenv("SUPABASE_URL")
    supabase_service_role_key: Optional[str] = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    user_uuid_override: Optional[str] = os.getenv("USER_UUID_OVERRIDE") or None

    # Collaborator bounds (seconds)
    transcribe_timeout_s: float = _get_float("CALLCOACH_TRANSCRIBE_TIMEOUT_S", 25.0)
    llm_timeout_s: float = _get_float("CALLCOACH_LLM_TIMEOUT_S", 30.0)
    retrieval_timeout_s: float = _get_float("CALLCOACH_RETRIEVAL_TIMEOUT_S", 8.0)
    tts_timeout_s: float = _get_float("CALLCOACH_TTS_TIMEOUT_S", 20.0)
    store_timeout_s: float = _get_float("CALLCOACH_STORE_TIMEOUT_S", 8.0)

    # Dedupe / single-flight
    dedupe_window_s: float = _get_float("CALLCOACH_DEDUPE_WINDOW_S", 2.5)
    dedupe_record_ttl_s: float = _get_float("CALLCOACH_DEDUPE_RECORD_TTL_S", 60.0)
    sweep_interval_s: float = _get_float("CALLCOACH_SWEEP_INTERVAL_S", 30.0)

    # Metrics
    metrics_file: str = os.getenv("CALLCOACH_METRICS_FILE", "./metrics/turns.ndjson")


settings = Settings()
