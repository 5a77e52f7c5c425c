"""PipelineManager: the VAD -> STT -> LLM -> TTS orchestration loop.

The manager owns the session state machine and drives each turn through
the stages:

1. ``push_audio`` queues caller audio without blocking
2. A per-session audio loop runs the VAD on each chunk and collects the
   speech segment into a bounded AudioBuffer
3. When the segment closes, a Turn is created and runs in its own task:
   the STT transcribes the segment, the LLM answers with the recent
   history as context, and the TTS (if enabled) synthesizes the answer
4. Every step is published on the event bus; completed turns enter the
   conversation history

At most one turn runs at a time. With interruption enabled, speech during
generation or synthesis cancels the running turn (barge-in) and opens a
new segment; otherwise audio that arrives mid-turn is held and processed
once the turn ends.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections import deque
from functools import partial
from typing import Any, Callable

from loguru import logger

from voxflow.adapters.base import (
    BaseAdapter,
    BaseLLM,
    BaseSTT,
    BaseTTS,
    BaseVAD,
    Message,
    SpeechActivity,
    TTSChunk,
)
from voxflow.adapters.registry import AdapterRegistry
from voxflow.audio.buffer import AudioBuffer, AudioChunk
from voxflow.config import PipelineSettings, StageConfig, load_config
from voxflow.core.bus import EventBus, EventHandler
from voxflow.core.errors import (
    AdapterError,
    ConcurrentOperationError,
    InitializationError,
    NotInitializedError,
    StageError,
    StageErrorKind,
    TurnStateError,
)
from voxflow.core.events import (
    BufferOverflow,
    ErrorEvent,
    Event,
    EventType,
    FinalTranscript,
    LLMComplete,
    LLMToken,
    PartialTranscript,
    SpeechEnd,
    SpeechStart,
    Stage,
    StateChanged,
    TTSAudioChunk,
    TTSComplete,
    TurnCancelled,
    TurnCompleted,
    TurnFailed,
)
from voxflow.pipeline.cancellation import CancelToken
from voxflow.pipeline.history import ConversationHistory
from voxflow.pipeline.metrics import MetricsCollector
from voxflow.pipeline.runner import StageRunner
from voxflow.pipeline.turn import (
    ACTIVE_STATES,
    INTERRUPTIBLE_STATES,
    Session,
    SessionState,
    Turn,
)

# Hook called with every completed turn
TurnHook = Callable[[Turn], Any]

# Audio queue markers
_END_OF_SPEECH = object()
_DRAIN = object()


class PipelineManager:
    """Runs voice sessions over adapters resolved from a registry.

    Usage:
        registry = register_builtins(AdapterRegistry())
        manager = PipelineManager(registry)

        @manager.on(EventType.FINAL_TRANSCRIPT)
        def show(event):
            print("caller:", event.text)

        await manager.initialize("voxflow.yaml")
        await manager.start()
        manager.push_audio(AudioChunk(data=pcm))
        ...
        session = await manager.stop()
        await manager.destroy()

    Args:
        registry: Where adapters are resolved from.
        metrics: Optional shared MetricsCollector.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        *,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.registry = registry
        self.settings = PipelineSettings()
        self._metrics = metrics or MetricsCollector()
        self._bus = EventBus()
        self._runner = StageRunner(metrics=self._metrics)
        self._turn_hooks: list[TurnHook] = []

        self._state = SessionState.UNINITIALIZED
        self._adapters: dict[Stage, BaseAdapter] = {}
        self._degraded: dict[Stage, BaseException] = {}
        self._initialized: set[tuple[Stage, str]] = set()
        self._history = ConversationHistory()

        # Per-session state
        self._session: Session | None = None
        self._session_token = CancelToken()
        self._audio_queue: asyncio.Queue | None = None
        self._audio_task: asyncio.Task | None = None
        self._held: deque[Any] = deque()
        self._segment: AudioBuffer | None = None
        self._active_turn: Turn | None = None
        self._turn_token: CancelToken | None = None
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(
        self, config: PipelineSettings | dict[str, Any] | str | None = None
    ) -> None:
        """Resolve and initialize one adapter per enabled stage.

        Idempotent once ready. Optional stages (VAD, TTS) that fail to
        initialize are skipped with a ``degraded`` error event; failures of
        the STT or LLM stage raise InitializationError with every cause.
        """
        if self._state == SessionState.INITIALIZING:
            raise ConcurrentOperationError("Pipeline is already initializing")
        if self._state == SessionState.READY or self._state in ACTIVE_STATES:
            if config is not None:
                logger.warning("Pipeline already initialized; new config ignored")
            return

        settings = load_config(config) if config is not None else self.settings
        await self._set_state(SessionState.INITIALIZING)
        self.settings = settings
        self._runner.retry_backoff_ms = settings.retry_backoff_ms

        adapters: dict[Stage, BaseAdapter] = {}
        failures: dict[Stage, BaseException] = {}
        for stage in Stage:
            stage_config = settings.stage(stage)
            if not stage_config.enabled:
                logger.info(f"{stage.value.upper()} stage disabled")
                continue
            try:
                if stage_config.adapter and stage_config.priority is not None:
                    self.registry.set_priority(
                        stage, stage_config.adapter, stage_config.priority
                    )
                adapter = self.registry.resolve(stage, stage_config.adapter or None)
                await self._ensure_initialized(adapter, stage_config)
                adapters[stage] = adapter
            except Exception as e:
                failures[stage] = e

        if any(stage.mandatory for stage in failures):
            for stage, e in failures.items():
                logger.error(f"{stage.value.upper()} initialization failed: {e}")
            error = InitializationError(failures)
            self._adapters = {}
            await self._set_state(SessionState.ERROR)
            await self._emit(ErrorEvent(kind="initialization", message=str(error), fatal=True))
            raise error

        for stage, e in failures.items():
            logger.warning(f"{stage.value.upper()} unavailable, continuing without it: {e}")
            await self._emit(ErrorEvent(kind="degraded", stage=stage, message=str(e)))

        self._adapters = adapters
        self._degraded = failures
        await self._set_state(SessionState.READY)
        logger.info(
            "Pipeline ready: "
            + ", ".join(f"{s.value}={a.name}" for s, a in adapters.items())
        )

    async def start(self) -> None:
        """Open a session and start listening."""
        if self._state != SessionState.READY:
            raise NotInitializedError(
                f"Cannot start pipeline in state '{self._state.value}'; "
                "call initialize() first"
            )

        settings = self.settings
        self._session = Session(
            adapters={stage: adapter.name for stage, adapter in self._adapters.items()}
        )
        self._history = ConversationHistory(
            max_turns=settings.history_max_turns,
            system_prompt=settings.system_prompt,
            max_context_chars=settings.max_context_chars,
        )
        self._session_token = CancelToken()
        self._audio_queue = asyncio.Queue()
        self._held.clear()
        self._segment = None
        self._active_turn = None
        self._turn_token = None

        if Stage.VAD not in self._adapters:
            logger.info("No VAD adapter: push-to-talk mode, call end_speech() to close a segment")

        self._audio_task = asyncio.create_task(self._audio_loop())
        await self._set_state(SessionState.LISTENING)
        logger.info(f"Session {self._session.session_id} started")

    def push_audio(self, chunk: AudioChunk | bytes) -> None:
        """Queue a chunk of caller audio. Never blocks and never raises."""
        try:
            if self._audio_queue is None or self._state not in ACTIVE_STATES:
                logger.warning(f"push_audio ignored in state '{self._state.value}'")
                return
            if isinstance(chunk, (bytes, bytearray)):
                chunk = AudioChunk(data=bytes(chunk))
            if not isinstance(chunk, AudioChunk):
                logger.warning(f"push_audio ignored unsupported chunk type {type(chunk).__name__}")
                return
            self._audio_queue.put_nowait(chunk)
        except Exception as e:
            logger.warning(f"push_audio dropped a chunk: {e}")

    def end_speech(self) -> None:
        """Close the open speech segment (push-to-talk release)."""
        if self._audio_queue is None or self._state not in ACTIVE_STATES:
            logger.warning(f"end_speech ignored in state '{self._state.value}'")
            return
        self._audio_queue.put_nowait(_END_OF_SPEECH)

    async def interrupt(self, reason: str = "interrupted") -> bool:
        """Cancel the running turn during generation or synthesis.

        Returns True if a turn was cancelled. The cancelled turn's adapters
        are not awaited; the session is listening again when this returns.
        """
        if not self.settings.interruption_enabled:
            logger.warning("interrupt() ignored: interruption is disabled")
            return False
        turn = self._active_turn
        if turn is None or turn.is_terminal or self._state not in INTERRUPTIBLE_STATES:
            logger.warning(f"interrupt() ignored in state '{self._state.value}'")
            return False
        logger.info(f"Interrupting turn {turn.turn_id}")
        await self._cancel_turn(turn, reason)
        return True

    async def stop(self) -> Session | None:
        """End the session. Returns it, or None if no session was running.

        A running turn is cancelled without waiting for its adapters.
        """
        if self._state == SessionState.INITIALIZING:
            raise ConcurrentOperationError("Cannot stop while initializing")
        session = self._session
        if session is None:
            if self._state in (SessionState.READY, SessionState.ERROR):
                await self._set_state(SessionState.STOPPED)
            return None

        logger.info(f"Stopping session {session.session_id}")
        self._session_token.cancel("stopped")
        turn = self._active_turn
        if turn is not None and not turn.is_terminal:
            await self._cancel_turn(turn, "stopped", resume=False)
        self._active_turn = None
        self._turn_token = None

        task = self._audio_task
        self._audio_task = None
        self._audio_queue = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._held.clear()
        self._segment = None

        for stage, adapter in self._adapters.items():
            try:
                await adapter.reset()
            except Exception as e:
                logger.error(f"{stage.value.upper()} adapter '{adapter.name}' reset failed: {e}")

        session.end()
        await self._set_state(SessionState.STOPPED)
        self._session = None
        logger.info(
            f"Session {session.session_id} ended: {len(session.turns)} turns, "
            f"{session.duration_ms}ms"
        )
        return session

    async def destroy(self) -> None:
        """Stop any session and release every adapter this manager initialized."""
        if self._session is not None:
            await self.stop()
        released = 0
        for stage, name in sorted(self._initialized):
            if await self.registry.release(stage, name):
                released += 1
        self._initialized.clear()
        self._adapters = {}
        self._degraded = {}
        if self._state != SessionState.UNINITIALIZED:
            await self._set_state(SessionState.STOPPED)
        logger.info(f"Pipeline destroyed ({released} adapters released)")

    # ------------------------------------------------------------------
    # Subscriptions and introspection
    # ------------------------------------------------------------------

    def on(self, event_type: EventType | str, handler: EventHandler | None = None) -> Any:
        """Subscribe to an event type (or ``"*"``). Usable as a decorator."""
        return self._bus.on(event_type, handler)

    def off(self, event_type: EventType | str, handler: EventHandler | None = None) -> None:
        self._bus.off(event_type, handler)

    def on_turn_completed(self, hook: TurnHook) -> TurnHook:
        """Register a hook called with each completed Turn (e.g. persistence)."""
        self._turn_hooks.append(hook)
        return hook

    def health(self) -> dict[str, Any]:
        """Per-stage adapter health plus an overall flag."""
        stages: dict[str, Any] = {}
        for stage in Stage:
            adapter = self._adapters.get(stage)
            if adapter is None:
                stages[stage.value] = {
                    "adapter": None,
                    "healthy": False,
                    "degraded": stage in self._degraded,
                }
                continue
            try:
                healthy = bool(adapter.is_healthy())
            except Exception as e:
                logger.warning(f"{stage.value.upper()} health check failed: {e}")
                healthy = False
            stages[stage.value] = {"adapter": adapter.name, "healthy": healthy, "degraded": False}

        overall = self._state not in (
            SessionState.UNINITIALIZED, SessionState.ERROR, SessionState.STOPPED,
        ) and all(
            stages[stage.value]["healthy"] for stage in Stage if stage in self._adapters
        )
        return {"state": self._state.value, "healthy": overall, "stages": stages}

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def history(self) -> ConversationHistory:
        return self._history

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def active_turn(self) -> Turn | None:
        return self._active_turn

    @property
    def adapters(self) -> dict[Stage, str]:
        return {stage: adapter.name for stage, adapter in self._adapters.items()}

    @property
    def push_to_talk(self) -> bool:
        return Stage.VAD not in self._adapters

    # ------------------------------------------------------------------
    # Audio loop
    # ------------------------------------------------------------------

    async def _audio_loop(self) -> None:
        queue = self._audio_queue
        while True:
            item = await queue.get()
            try:
                if item is _DRAIN:
                    await self._drain_held()
                else:
                    await self._dispatch(item)
            except Exception as e:
                await self._recover(e)

    async def _dispatch(self, item: Any) -> None:
        # Held audio always goes first so segments keep arrival order
        self._held.append(item)
        await self._drain_held()

    async def _drain_held(self) -> None:
        while self._held:
            turn = self._active_turn
            if turn is None:
                await self._process(self._held.popleft())
            elif self._can_barge_in(turn):
                await self._barge_in(self._held.popleft())
            else:
                return

    def _can_barge_in(self, turn: Turn) -> bool:
        return (
            self.settings.interruption_enabled
            and not turn.is_terminal
            and self._state in INTERRUPTIBLE_STATES
        )

    async def _barge_in(self, item: Any) -> None:
        if item is _END_OF_SPEECH:
            await self._close_segment()
            return
        chunk: AudioChunk = item
        vad = self._adapters.get(Stage.VAD)
        if vad is not None:
            activity = await self._detect(vad, chunk)
            if activity != SpeechActivity.STARTED:
                return
        logger.info("Pipeline: barge-in detected")
        await self.interrupt(reason="barge_in")
        if self._active_turn is None:
            await self._open_segment(chunk)

    async def _process(self, item: Any) -> None:
        if item is _END_OF_SPEECH:
            await self._close_segment()
            return

        chunk: AudioChunk = item
        vad = self._adapters.get(Stage.VAD)
        if vad is None:
            if self._segment is None:
                await self._open_segment(chunk)
            else:
                await self._append(chunk)
            return

        activity = await self._detect(vad, chunk)
        if activity == SpeechActivity.STARTED:
            if self._segment is None:
                await self._open_segment(chunk)
            else:
                await self._append(chunk)
        elif activity == SpeechActivity.SPEAKING:
            if self._segment is not None:
                await self._append(chunk)
        elif activity == SpeechActivity.ENDED:
            if self._segment is not None:
                await self._append(chunk)
                await self._close_segment()

    async def _detect(self, vad: BaseVAD, chunk: AudioChunk) -> SpeechActivity:
        config = self.settings.vad
        result = await self._runner.run(
            partial(vad.detect, chunk, cancel_token=self._session_token),
            adapter=vad,
            cancel_token=self._session_token,
            timeout_ms=config.timeout_ms,
            retryable=config.retryable,
        )
        if result.ok:
            return result.value
        if result.error.kind != StageErrorKind.CANCELLED:
            logger.warning(f"VAD failed, treating chunk as silence: {result.error}")
            await self._emit(ErrorEvent(
                kind=result.error.kind.value,
                stage=Stage.VAD,
                message=str(result.error),
            ))
        return SpeechActivity.SILENCE

    async def _open_segment(self, chunk: AudioChunk) -> None:
        self._segment = AudioBuffer(self.settings.max_buffer_duration_ms)
        await self._set_state(SessionState.SPEECH_DETECTED)
        await self._emit(SpeechStart())
        await self._append(chunk)

    async def _append(self, chunk: AudioChunk) -> None:
        segment = self._segment
        dropped = segment.append(chunk)
        # Report the first overflow of a segment only
        if dropped and segment.dropped_chunks == dropped:
            self._metrics.record_buffer_overflow()
            await self._emit(BufferOverflow(
                dropped_chunks=dropped,
                max_duration_ms=segment.max_duration_ms,
            ))

    async def _close_segment(self) -> None:
        segment = self._segment
        if segment is None:
            return
        self._segment = None

        if not len(segment):
            await self._emit(SpeechEnd())
            await self._set_state(SessionState.LISTENING)
            return

        turn = Turn(audio=segment.snapshot())
        await self._emit(SpeechEnd(
            turn_id=turn.turn_id,
            duration_ms=segment.duration_ms,
            chunk_count=len(segment),
        ))
        self._begin_turn(turn)

    async def _recover(self, error: Exception) -> None:
        logger.error(f"Audio processing error: {error}")
        self._segment = None
        await self._set_state(SessionState.ERROR)
        await self._emit(ErrorEvent(kind="pipeline", message=str(error)))

        mandatory_ok = True
        for stage in (Stage.STT, Stage.LLM):
            adapter = self._adapters.get(stage)
            try:
                mandatory_ok = mandatory_ok and adapter is not None and adapter.is_healthy()
            except Exception:
                mandatory_ok = False
        if mandatory_ok:
            if self._active_turn is None:
                await self._set_state(SessionState.LISTENING)
            return

        logger.error("Required adapter unhealthy, stopping session")
        await self._emit(ErrorEvent(kind="pipeline", message="required adapter unhealthy", fatal=True))
        task = asyncio.ensure_future(self.stop())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def _begin_turn(self, turn: Turn) -> None:
        if self._active_turn is not None:
            raise TurnStateError(
                f"Cannot start turn {turn.turn_id}: turn {self._active_turn.turn_id} is running"
            )
        turn.start()
        self._session.turns.append(turn)
        self._metrics.record_turn_started()
        self._active_turn = turn
        token = CancelToken()
        self._turn_token = token
        task = asyncio.create_task(self._run_turn(turn, token))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _is_live(self, turn: Turn) -> bool:
        return turn is self._active_turn and not turn.is_terminal

    async def _run_turn(self, turn: Turn, token: CancelToken) -> None:
        logger.info(f"Turn {turn.turn_id}: {len(turn.audio)} audio chunks")
        try:
            await self._set_turn_state(turn, SessionState.TRANSCRIBING)
            transcript = await self._transcribe(turn, token)
            if transcript is None or not self._is_live(turn):
                return
            if not transcript.strip():
                logger.info(f"Turn {turn.turn_id}: no speech recognized")
                await self._cancel_turn(turn, "no_speech")
                return
            await self._emit(FinalTranscript(
                turn_id=turn.turn_id,
                text=transcript,
                adapter=turn.adapters.get(Stage.STT, ""),
            ))
            logger.info(f"Processing turn: '{transcript[:80]}'")

            await self._set_turn_state(turn, SessionState.GENERATING)
            text = await self._generate(turn, token, transcript)
            if text is None or not self._is_live(turn):
                return

            if Stage.TTS in self._adapters and text.strip():
                await self._set_turn_state(turn, SessionState.SYNTHESIZING)
                if not await self._synthesize(turn, token, text):
                    return
            if self._is_live(turn):
                await self._complete_turn(turn)
        except Exception as e:
            logger.error(f"Turn {turn.turn_id} crashed: {e}")
            if self._is_live(turn):
                await self._fail_turn(turn, StageError(
                    self._stage_for(self._state), StageErrorKind.FATAL, e
                ))

    @staticmethod
    def _stage_for(state: SessionState) -> Stage:
        return {
            SessionState.GENERATING: Stage.LLM,
            SessionState.SYNTHESIZING: Stage.TTS,
        }.get(state, Stage.STT)

    async def _set_turn_state(self, turn: Turn, state: SessionState) -> None:
        if not self._is_live(turn):
            return
        await self._set_state(state)
        # Speech held while transcribing may now barge in
        if self._held and self._audio_queue is not None and self._can_barge_in(turn):
            self._audio_queue.put_nowait(_DRAIN)

    async def _transcribe(self, turn: Turn, token: CancelToken) -> str | None:
        config = self.settings.stt
        adapter = self._adapters[Stage.STT]
        primary = adapter.name
        attempted = [adapter.name]

        while True:
            result = await self._runner.run(
                partial(self._stt_operation, adapter, turn, token),
                adapter=adapter,
                cancel_token=token,
                timeout_ms=config.timeout_ms,
                retryable=config.retryable,
            )
            if not self._is_live(turn):
                return None
            if result.ok:
                turn.record_transcript(result.value, adapter.name, result.latency_ms)
                return result.value

            logger.warning(f"STT adapter '{adapter.name}' failed: {result.error}")
            fallback = None
            if len(attempted) == 1:
                fallback = self.registry.resolve_next(Stage.STT, exclude=attempted)
            if fallback is None:
                await self._fail_turn(turn, result.error)
                return None

            try:
                await self._ensure_initialized(fallback, config, primary)
            except Exception as e:
                logger.error(f"Fallback STT adapter '{fallback.name}' failed to initialize: {e}")
                await self._fail_turn(turn, result.error)
                return None
            if not self._is_live(turn):
                return None

            logger.info(f"Falling back to STT adapter '{fallback.name}'")
            self._metrics.record_fallback(Stage.STT)
            attempted.append(fallback.name)
            adapter = fallback

    async def _stt_operation(self, adapter: BaseSTT, turn: Turn, token: CancelToken) -> str:
        finals: list[str] = []
        last_partial = ""
        async for result in adapter.transcribe(turn.audio, cancel_token=token):
            if not self._is_live(turn):
                break
            text = result.text.strip()
            if not text:
                continue
            if result.is_final:
                finals.append(text)
            else:
                last_partial = text
                await self._emit(PartialTranscript(turn_id=turn.turn_id, text=text))
        return " ".join(finals) if finals else last_partial

    async def _generate(self, turn: Turn, token: CancelToken, transcript: str) -> str | None:
        config = self.settings.llm
        adapter = self._adapters[Stage.LLM]
        messages = self._history.to_messages(transcript, self.settings.prompt_history_turns)

        result = await self._runner.run(
            partial(self._llm_operation, adapter, turn, token, messages, time.perf_counter()),
            adapter=adapter,
            cancel_token=token,
            timeout_ms=config.timeout_ms,
            retryable=config.retryable,
        )
        if not self._is_live(turn):
            return None
        if not result.ok:
            await self._fail_turn(turn, result.error)
            return None

        turn.record_generation(result.value, adapter.name, result.latency_ms)
        await self._emit(LLMComplete(turn_id=turn.turn_id, text=result.value))
        return result.value

    async def _llm_operation(
        self,
        adapter: BaseLLM,
        turn: Turn,
        token: CancelToken,
        messages: list[Message],
        started: float,
    ) -> str:
        parts: list[str] = []
        try:
            async for chunk in adapter.generate(messages, cancel_token=token):
                if not self._is_live(turn):
                    break
                if not chunk.text:
                    continue
                if not parts:
                    self._metrics.record_first_token((time.perf_counter() - started) * 1000)
                await self._emit(LLMToken(
                    turn_id=turn.turn_id, text=chunk.text, index=len(parts)
                ))
                parts.append(chunk.text)
        except AdapterError as e:
            # Tokens already went out; a retry would repeat them
            if parts and e.retryable:
                raise AdapterError(f"{e} (after {len(parts)} tokens)") from e
            raise
        return "".join(parts)

    async def _synthesize(self, turn: Turn, token: CancelToken, text: str) -> bool:
        config = self.settings.tts
        adapter = self._adapters[Stage.TTS]

        result = await self._runner.run(
            partial(self._tts_operation, adapter, turn, token, text),
            adapter=adapter,
            cancel_token=token,
            timeout_ms=config.timeout_ms,
            retryable=config.retryable,
        )
        if not self._is_live(turn):
            return False
        if not result.ok:
            await self._fail_turn(turn, result.error)
            return False

        chunks = result.value
        turn.record_synthesis(chunks, adapter.name, result.latency_ms)
        await self._emit(TTSComplete(turn_id=turn.turn_id, chunk_count=len(chunks)))
        return True

    async def _tts_operation(
        self, adapter: BaseTTS, turn: Turn, token: CancelToken, text: str
    ) -> tuple[TTSChunk, ...]:
        chunks: list[TTSChunk] = []
        try:
            async for chunk in adapter.synthesize(text, cancel_token=token):
                if not self._is_live(turn):
                    break
                if not chunk.audio:
                    continue
                await self._emit(TTSAudioChunk(
                    turn_id=turn.turn_id,
                    audio=chunk.audio,
                    sample_rate=chunk.sample_rate,
                    sequence=len(chunks),
                ))
                chunks.append(chunk)
        except AdapterError as e:
            if chunks and e.retryable:
                raise AdapterError(f"{e} (after {len(chunks)} chunks)") from e
            raise
        return tuple(chunks)

    async def _complete_turn(self, turn: Turn) -> None:
        turn.complete()
        self._history.append(turn)
        self._metrics.record_turn("completed", turn.total_latency_ms)
        logger.info(f"Turn {turn.turn_id} completed in {turn.total_latency_ms:.0f}ms")

        await self._emit(TurnCompleted(
            turn_id=turn.turn_id,
            transcript=turn.transcript or "",
            generated_text=turn.generated_text or "",
            latency_ms=turn.total_latency_ms,
        ))
        for hook in list(self._turn_hooks):
            try:
                result = hook(turn)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Turn hook {getattr(hook, '__name__', hook)!r} failed: {e}")
        await self._finish_turn(turn)

    async def _fail_turn(self, turn: Turn, error: StageError) -> None:
        turn.fail(error)
        self._metrics.record_turn("failed", turn.total_latency_ms)
        logger.error(f"Turn {turn.turn_id} failed: {error}")

        await self._emit(ErrorEvent(
            turn_id=turn.turn_id,
            kind=error.kind.value,
            stage=error.stage,
            message=str(error),
        ))
        await self._emit(TurnFailed(turn_id=turn.turn_id, stage=error.stage, reason=str(error)))
        await self._finish_turn(turn)

    async def _cancel_turn(self, turn: Turn, reason: str, resume: bool = True) -> None:
        if not turn.cancel(reason):
            return
        if self._turn_token is not None and turn is self._active_turn:
            self._turn_token.cancel(reason)
        self._metrics.record_turn("cancelled")
        logger.info(f"Turn {turn.turn_id} cancelled: {reason}")

        await self._emit(TurnCancelled(turn_id=turn.turn_id, reason=reason))
        if resume:
            await self._finish_turn(turn)

    async def _finish_turn(self, turn: Turn) -> None:
        """Return to listening and release audio held during the turn."""
        if turn is not self._active_turn:
            return
        await self._set_state(SessionState.LISTENING)
        self._active_turn = None
        self._turn_token = None
        if self._audio_queue is not None:
            self._audio_queue.put_nowait(_DRAIN)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _ensure_initialized(
        self, adapter: BaseAdapter, config: StageConfig, primary: str | None = None
    ) -> None:
        key = (adapter.stage, adapter.name)
        if key in self._initialized:
            return
        options = config.options_for(adapter.name, primary or adapter.name)
        init = adapter.initialize(options)
        if config.timeout_ms > 0:
            await asyncio.wait_for(init, config.timeout_ms / 1000.0)
        else:
            await init
        self._initialized.add(key)
        logger.debug(f"{adapter.stage.value.upper()} adapter '{adapter.name}' initialized")

    async def _set_state(self, state: SessionState) -> None:
        previous = self._state
        if previous == state:
            return
        self._state = state
        if self._session is not None and state in ACTIVE_STATES:
            self._session.state = state
        logger.debug(f"Pipeline state: {previous.value} -> {state.value}")
        await self._emit(StateChanged(previous=previous.value, current=state.value))

    async def _emit(self, event: Event) -> None:
        if self._session is not None and not event.session_id:
            event.session_id = self._session.session_id
        await self._bus.emit(event)
