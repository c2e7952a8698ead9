"""
Terminal phone call with the coach.

    callcoach-call --server http://127.0.0.1:8080

While connected: `m` + Enter toggles the mic, `s` + Enter toggles the
speaker, `q` + Enter (or Ctrl+C) hangs up.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import sys
import uuid
from pathlib import Path
from typing import Optional

from .capture import AudioCapture, SoundDeviceMicrophone
from .client import CoachClient
from .controller import ControllerConfig, TurnController
from .logging import RichLogger
from .models import CallSession
from .playback import PlaybackManager, SoundDeviceSink
from .settings import settings
from .vad import SilenceConfig


def load_device_id(path: str = settings.device_id_file) -> str:
    """Stable per-install id, created on first use."""
    p = Path(path).expanduser()
    with contextlib.suppress(OSError):
        existing = p.read_text(encoding="utf-8").strip()
        if existing:
            return existing
    device_id = str(uuid.uuid4())
    with contextlib.suppress(OSError):
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(device_id, encoding="utf-8")
    return device_id


def _print_bubble(kind: str, text: str) -> None:
    if kind == "you":
        print(f"\n  you:   {text}")
    elif kind == "coach":
        print(f"  coach: {text}\n")
    elif kind == "status":
        print(f"[{RichLogger._format_time()}] 📞 {text}")


async def _keyboard(ctl: TurnController) -> None:
    loop = asyncio.get_running_loop()
    while ctl.active:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            return
        cmd = line.strip().lower()
        if cmd == "q":
            await ctl.hang_up()
            return
        if cmd == "m":
            ctl.set_mic_muted(not ctl.mic_muted)
            print(f"🎙️  mic {'muted' if ctl.mic_muted else 'live'}")
        elif cmd == "s":
            ctl.set_speaker_muted(not ctl.speaker_muted)
            print(f"🔈 speaker {'muted' if ctl.speaker_muted else 'on'}")


async def call(args: argparse.Namespace) -> None:
    session = CallSession(
        call_id=str(uuid.uuid4()),
        device_id=load_device_id(args.device_id_file),
        conversation_id=args.conversation_id,
    )
    silence = SilenceConfig(adaptive=args.adaptive, use_webrtc=args.webrtc)
    capture = AudioCapture(lambda: SoundDeviceMicrophone(sample_rate=settings.sample_rate), cfg=silence)
    sink = SoundDeviceSink()
    playback = PlaybackManager(sink)
    client = CoachClient(args.server)
    ctl = TurnController(
        session,
        capture,
        client,
        playback,
        cfg=ControllerConfig(want_audio=not args.text_only, idle_nudge_ms=args.idle_nudge_ms),
        observer=_print_bubble,
    )

    await ctl.start()
    keys = asyncio.create_task(_keyboard(ctl))
    try:
        await ctl.wait_closed()
    except asyncio.CancelledError:
        await ctl.hang_up()
    finally:
        keys.cancel()
        print(f"[{RichLogger._format_time()}] ⏱️  Call length: {ctl.elapsed_s:.0f}s")
        await client.aclose()
        sink.close()


def main(argv: Optional[list[str]] = None) -> None:
    ap = argparse.ArgumentParser(prog="callcoach-call", description="Talk to the coach over your mic and speaker.")
    ap.add_argument("--server", default=settings.server_url, help="coach gateway base URL")
    ap.add_argument("--conversation-id", default=None, help="attach the call to an existing conversation")
    ap.add_argument("--device-id-file", default=settings.device_id_file)
    ap.add_argument("--text-only", action="store_true", default=not settings.want_audio,
                    help="ask for replies without audio")
    ap.add_argument("--idle-nudge-ms", type=int, default=25000, help="0 disables no-response nudges")
    ap.add_argument("--adaptive", action="store_true", help="follow the room's noise floor")
    ap.add_argument("--webrtc", action="store_true", help="require WebRTC VAD speech on top of energy")
    args = ap.parse_args(argv)

    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(call(args))


if __name__ == "__main__":
    main()
