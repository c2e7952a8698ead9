# Client → Server coach request fields
F_SOURCE = "source"
F_CONVERSATION_ID = "conversationId"
F_TRANSCRIPT = "transcript"
F_CALL_ID = "call_id"
F_DEVICE_ID = "device_id"
F_WANT_AUDIO = "want_audio"
F_ROLLING_SUMMARY = "rolling_summary"
F_SYSTEM_EVENT = "system_event"
F_SYSTEM_SAY = "system_say"

SOURCE_VOICE = "voice"
SOURCE_CHAT = "chat"

# System events (no-response handling)
EVT_NO_RESPONSE_NUDGE = "no_response_nudge"
EVT_NO_RESPONSE_END = "no_response_end"

# Server → Client reply fields
R_TEXT = "text"
R_ASSISTANT_TEXT = "assistant_text"
R_AUDIO_B64 = "audio_base64"
R_MIME = "mime"
R_USED_KNOWLEDGE = "usedKnowledge"
R_SKIPPED_DUPLICATE = "skipped_duplicate"

NO_STORE_HEADERS = {"Cache-Control": "no-store"}

# Playback effect kinds
FX_RING = "ring"
FX_CONNECT = "connect"
FX_RECONNECT = "reconnect"
FX_END = "end"
