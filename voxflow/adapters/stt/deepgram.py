"""Deepgram streaming Speech-to-Text adapter.

Transcribes one speech segment per call over Deepgram's real-time
WebSocket API: the segment's audio is streamed in, CloseStream flushes
the transcript, and interim and final results are yielded as they arrive.

Requires: pip install websockets (already a voxflow dependency)
API key: https://console.deepgram.com/
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Sequence

from loguru import logger

from voxflow.adapters.base import BaseSTT, STTResult
from voxflow.audio.buffer import AudioChunk
from voxflow.core.errors import AdapterError, TransientAdapterError
from voxflow.pipeline.cancellation import CancelToken

try:
    import websockets
    from websockets.exceptions import InvalidHandshake, WebSocketException
except ImportError:
    websockets = None  # type: ignore


class DeepgramSTT(BaseSTT):
    """Deepgram real-time STT, one WebSocket connection per segment.

    All arguments can also be given as stage options to ``initialize``.

    Args:
        api_key: Deepgram API key.
        model: Deepgram model (default: "nova-2").
        language: Language code (default: "en-US").
        encoding: Audio encoding (default: "linear16" for PCM16).
        interim_results: Whether to return partial results (default: True).
        smart_format: Enable smart formatting (default: True).
        extra_params: Additional Deepgram query parameters.
    """

    DEEPGRAM_WS_URL = "wss://api.deepgram.com/v1/listen"

    def __init__(
        self,
        api_key: str = "",
        model: str = "nova-2",
        language: str = "en-US",
        encoding: str = "linear16",
        interim_results: bool = True,
        smart_format: bool = True,
        extra_params: dict[str, Any] | None = None,
    ):
        if websockets is None:
            raise ImportError(
                "websockets is required for DeepgramSTT. "
                "Install with: pip install websockets"
            )

        self._api_key = api_key
        self._model = model
        self._language = language
        self._encoding = encoding
        self._interim_results = interim_results
        self._smart_format = smart_format
        self._extra_params = extra_params or {}

    async def initialize(self, options: dict[str, Any]) -> None:
        self._api_key = options.get("api_key", self._api_key)
        self._model = options.get("model", self._model)
        self._language = options.get("language", self._language)
        self._encoding = options.get("encoding", self._encoding)
        self._interim_results = options.get("interim_results", self._interim_results)
        self._smart_format = options.get("smart_format", self._smart_format)
        self._extra_params.update(options.get("extra_params", {}))
        if not self._api_key:
            raise AdapterError("DeepgramSTT requires an api_key")

    async def transcribe(
        self,
        audio: Sequence[AudioChunk],
        *,
        cancel_token: CancelToken,
    ) -> AsyncIterator[STTResult]:
        """Stream the segment to Deepgram and yield its results."""
        if not audio:
            return

        url = self._build_url(audio[0].sample_rate, audio[0].channels)
        headers = {"Authorization": f"Token {self._api_key}"}
        logger.debug(f"Deepgram STT: {len(audio)} chunks (model={self._model})")

        try:
            async with websockets.connect(
                url, additional_headers=headers, ping_interval=5, ping_timeout=20
            ) as ws:
                sender = asyncio.create_task(self._send_audio(ws, audio, cancel_token))
                try:
                    async for message in ws:
                        if not isinstance(message, str):
                            continue
                        data = json.loads(message)
                        msg_type = data.get("type", "")

                        if msg_type == "Results":
                            result = self._parse_result(data)
                            if result:
                                yield result
                        elif msg_type == "Metadata":
                            logger.debug(f"Deepgram metadata: {data}")
                        elif msg_type == "Error":
                            raise AdapterError(f"Deepgram error: {data}")
                finally:
                    sender.cancel()
        except InvalidHandshake as e:
            raise AdapterError(f"Deepgram rejected the connection: {e}") from e
        except (OSError, WebSocketException) as e:
            raise TransientAdapterError(f"Deepgram connection error: {e}") from e

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _build_url(self, sample_rate: int, channels: int) -> str:
        params = {
            "model": self._model,
            "language": self._language,
            "sample_rate": str(sample_rate),
            "encoding": self._encoding,
            "channels": str(channels),
            "interim_results": str(self._interim_results).lower(),
            "smart_format": str(self._smart_format).lower(),
        }
        params.update(self._extra_params)
        query = "&".join(f"{k}={v}" for k, v in params.items())
        return f"{self.DEEPGRAM_WS_URL}?{query}"

    @staticmethod
    async def _send_audio(
        ws: Any, audio: Sequence[AudioChunk], cancel_token: CancelToken
    ) -> None:
        for chunk in audio:
            if cancel_token.cancelled:
                return
            await ws.send(chunk.data)
        # Ask Deepgram to flush final results and close
        await ws.send(json.dumps({"type": "CloseStream"}))

    def _parse_result(self, data: dict) -> STTResult | None:
        """Parse a Deepgram Results message into an STTResult."""
        channel = data.get("channel", {})
        alternatives = channel.get("alternatives", [])

        if not alternatives:
            return None

        best = alternatives[0]
        transcript = best.get("transcript", "").strip()

        if not transcript:
            return None

        words = [
            {
                "word": w.get("word", ""),
                "start": w.get("start", 0.0),
                "end": w.get("end", 0.0),
                "confidence": w.get("confidence", 0.0),
            }
            for w in best.get("words", [])
        ]

        return STTResult(
            text=transcript,
            is_final=data.get("is_final", False),
            confidence=best.get("confidence", 0.0),
            language=self._language,
            words=words,
        )
