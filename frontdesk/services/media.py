"""Media-stream bridge between the telephony provider and a speech pipeline.

The provider sends JSON events over the websocket:

``connected``  socket is up (no payload of interest)
``start``      stream metadata, including ``streamSid`` and ``callSid``
``media``      base64 μ-law audio, 8 kHz mono, usually 160 bytes (20 ms)
``mark``       playback of a previously sent mark finished
``stop``       the call hung up

Inbound frames are decoded to PCM16 and handed to the pipeline; whatever
PCM16 the pipeline returns is encoded and sent back in 160-byte frames.
Nothing on the frame path blocks on the EMR or the dialogue model.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from frontdesk import codec
from frontdesk.models import CallContext
from frontdesk.services.call_context import CallContextStore

logger = logging.getLogger(__name__)


class SpeechPipeline:
    """Hooks a voice agent implements.  The base class listens and stays
    silent."""

    def on_start(self, context: CallContext | None) -> bytes | None:
        """Called once the stream starts; may return greeting audio (PCM16)."""
        return None

    def on_audio(self, pcm16: bytes) -> bytes | None:
        """Called for every inbound frame; may return reply audio (PCM16)."""
        return None

    def on_stop(self) -> None:
        pass


@dataclass
class StreamState:
    context_key: str | None
    stream_sid: str | None = None
    call_sid: str | None = None
    frames_in: int = 0
    frames_out: int = 0
    marks: list[str] = field(default_factory=list)
    stopped: bool = False


def outbound_frames(stream_sid: str, pcm16: bytes) -> list[str]:
    """Encode PCM16 audio into provider ``media`` messages of 20 ms each."""
    if len(pcm16) % 2:
        pcm16 = pcm16[:-1]
    return [
        json.dumps({
            "event": "media",
            "streamSid": stream_sid,
            "media": {"payload": base64.b64encode(chunk).decode("ascii"), "track": "outbound"},
        })
        for chunk in codec.chunk_frames(codec.encode(pcm16))
    ]


def mark_message(stream_sid: str, name: str) -> str:
    return json.dumps({"event": "mark", "streamSid": stream_sid, "mark": {"name": name}})


class MediaStreamBridge:
    """Processes one media stream's events.  One instance per socket."""

    def __init__(
        self,
        contexts: CallContextStore,
        context_key: str | None,
        pipeline: SpeechPipeline | None = None,
    ) -> None:
        self._contexts = contexts
        self._pipeline = pipeline or SpeechPipeline()
        self.state = StreamState(context_key=context_key)
        self.context: CallContext | None = contexts.get(context_key) if context_key else None
        if context_key and self.context is None:
            logger.warning("Media stream opened for unknown context %s", context_key)

    def handle(self, event: dict[str, Any]) -> list[str]:
        """Apply one provider event; returns messages to send back."""
        kind = event.get("event")
        if kind == "connected":
            logger.debug("Media stream connected (context %s)", self.state.context_key)
            return []
        if kind == "start":
            return self._on_start(event)
        if kind == "media":
            return self._on_media(event)
        if kind == "mark":
            name = (event.get("mark") or {}).get("name")
            if name:
                self.state.marks.append(name)
            return []
        if kind == "stop":
            self._on_stop()
            return []
        logger.debug("Ignoring media event %r", kind)
        return []

    def _on_start(self, event: dict[str, Any]) -> list[str]:
        start = event.get("start") or {}
        self.state.stream_sid = start.get("streamSid") or event.get("streamSid")
        self.state.call_sid = start.get("callSid")

        params = start.get("customParameters") or {}
        if not self.state.context_key and params.get("contextKey"):
            self.state.context_key = params["contextKey"]

        if self.state.context_key and self.state.call_sid:
            attached = self._contexts.attach_provider_call_id(
                self.state.context_key, self.state.call_sid,
            )
            if attached is not None:
                self.context = attached
        logger.info(
            "Media stream %s started for call %s (context %s)",
            self.state.stream_sid, self.state.call_sid, self.state.context_key,
        )
        return self._reply(self._pipeline.on_start(self.context))

    def _on_media(self, event: dict[str, Any]) -> list[str]:
        payload = (event.get("media") or {}).get("payload")
        if not payload:
            return []
        try:
            ulaw = base64.b64decode(payload)
        except (binascii.Error, ValueError):
            logger.warning("Dropping undecodable media frame on stream %s", self.state.stream_sid)
            return []
        self.state.frames_in += 1
        return self._reply(self._pipeline.on_audio(codec.decode(ulaw)))

    def _on_stop(self) -> None:
        self.state.stopped = True
        self._pipeline.on_stop()
        logger.info(
            "Media stream %s stopped after %d frames in / %d out",
            self.state.stream_sid, self.state.frames_in, self.state.frames_out,
        )

    def _reply(self, pcm16: bytes | None) -> list[str]:
        if not pcm16 or not self.state.stream_sid:
            return []
        messages = outbound_frames(self.state.stream_sid, pcm16)
        self.state.frames_out += len(messages)
        # Provider echoes the mark once the reply has finished playing
        messages.append(mark_message(self.state.stream_sid, f"reply-{self.state.frames_out}"))
        return messages
