"""ElevenLabs streaming Text-to-Speech adapter.

Uses ElevenLabs' WebSocket stream-input API: each response is synthesized
over its own connection and audio is streamed back as PCM16 chunks for
immediate playback.

Requires: pip install websockets (already a voxflow dependency)
API key: https://elevenlabs.io/
"""

from __future__ import annotations

import base64
import json
from typing import Any, AsyncIterator

from loguru import logger

from voxflow.adapters.base import BaseTTS, TTSChunk
from voxflow.core.errors import AdapterError, TransientAdapterError
from voxflow.pipeline.cancellation import CancelToken

try:
    import websockets
    from websockets.exceptions import InvalidHandshake, WebSocketException
except ImportError:
    websockets = None  # type: ignore


class ElevenLabsTTS(BaseTTS):
    """ElevenLabs real-time streaming TTS.

    All arguments can also be given as stage options to ``initialize``.

    Args:
        api_key: ElevenLabs API key.
        voice_id: Voice identifier.
        model_id: TTS model (default: "eleven_turbo_v2_5").
        output_format: Audio output format (default: "pcm_24000").
        stability: Voice stability (0.0-1.0, default: 0.5).
        similarity_boost: Voice similarity (0.0-1.0, default: 0.75).
        optimize_streaming_latency: Latency optimization level (0-4, default: 3).
    """

    BASE_WS_URL = "wss://api.elevenlabs.io/v1/text-to-speech"

    def __init__(
        self,
        api_key: str = "",
        voice_id: str = "21m00Tcm4TlvDq8ikWAM",  # Rachel (default)
        model_id: str = "eleven_turbo_v2_5",
        output_format: str = "pcm_24000",
        stability: float = 0.5,
        similarity_boost: float = 0.75,
        optimize_streaming_latency: int = 3,
    ):
        if websockets is None:
            raise ImportError(
                "websockets is required for ElevenLabsTTS. "
                "Install with: pip install websockets"
            )

        self._api_key = api_key
        self._voice_id = voice_id
        self._model_id = model_id
        self._output_format = output_format
        self._stability = stability
        self._similarity_boost = similarity_boost
        self._optimize_streaming_latency = optimize_streaming_latency
        self._sample_rate_hz = self._parse_sample_rate(output_format)

    async def initialize(self, options: dict[str, Any]) -> None:
        self._api_key = options.get("api_key", self._api_key)
        self._voice_id = options.get("voice_id", self._voice_id)
        self._model_id = options.get("model_id", self._model_id)
        self._output_format = options.get("output_format", self._output_format)
        self._stability = float(options.get("stability", self._stability))
        self._similarity_boost = float(options.get("similarity_boost", self._similarity_boost))
        self._sample_rate_hz = self._parse_sample_rate(self._output_format)
        if not self._api_key:
            raise AdapterError("ElevenLabsTTS requires an api_key")
        if not self._output_format.startswith("pcm_"):
            raise AdapterError(
                f"ElevenLabsTTS streams PCM16 only, got output_format={self._output_format}"
            )

    async def synthesize(
        self,
        text: str,
        *,
        cancel_token: CancelToken,
    ) -> AsyncIterator[TTSChunk]:
        """Send ``text`` to ElevenLabs and yield audio chunks as they arrive."""
        url = (
            f"{self.BASE_WS_URL}/{self._voice_id}/stream-input"
            f"?model_id={self._model_id}"
            f"&output_format={self._output_format}"
            f"&optimize_streaming_latency={self._optimize_streaming_latency}"
        )
        logger.debug(f"ElevenLabs TTS: {len(text)} chars (voice={self._voice_id})")

        try:
            async with websockets.connect(
                url,
                additional_headers={"xi-api-key": self._api_key},
                ping_interval=5,
                ping_timeout=20,
            ) as ws:
                # Beginning of stream carries the voice settings
                await ws.send(json.dumps({
                    "text": " ",
                    "voice_settings": {
                        "stability": self._stability,
                        "similarity_boost": self._similarity_boost,
                    },
                    "xi_api_key": self._api_key,
                }))
                await ws.send(json.dumps({"text": text, "try_trigger_generation": True}))
                # End of stream: generate whatever is buffered
                await ws.send(json.dumps({"text": ""}))

                async for message in ws:
                    if cancel_token.cancelled:
                        return
                    if not isinstance(message, str):
                        continue
                    data = json.loads(message)

                    if data.get("error"):
                        raise AdapterError(f"ElevenLabs error: {data['error']}")

                    audio_b64 = data.get("audio")
                    if audio_b64:
                        audio_bytes = base64.b64decode(audio_b64)
                        if audio_bytes:
                            yield TTSChunk(audio=audio_bytes, sample_rate=self._sample_rate_hz)

                    if data.get("isFinal"):
                        yield TTSChunk(audio=b"", sample_rate=self._sample_rate_hz, is_final=True)
                        return
        except InvalidHandshake as e:
            raise AdapterError(f"ElevenLabs rejected the connection: {e}") from e
        except (OSError, WebSocketException) as e:
            raise TransientAdapterError(f"ElevenLabs connection error: {e}") from e

    @property
    def sample_rate(self) -> int:
        return self._sample_rate_hz

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_sample_rate(output_format: str) -> int:
        """Extract sample rate from ElevenLabs output format string."""
        # Formats: pcm_16000, pcm_22050, pcm_24000, pcm_44100
        for part in output_format.split("_"):
            try:
                rate = int(part)
                if rate >= 8000:
                    return rate
            except ValueError:
                continue
        return 24000  # default
