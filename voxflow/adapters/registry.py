"""Adapter registry: factories for VAD, STT, LLM and TTS adapters.

Descriptors are registered per stage and ranked by ascending ``priority``
(0 ranks first). Instances are created lazily on the first ``resolve`` and
cached until ``release``. The registry is a plain object: construct one and
inject it into the PipelineManager, there is no process-wide instance.
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass, field
from typing import Any, Callable, Collection, Union

from loguru import logger

from voxflow.adapters.base import (
    STAGE_CONTRACTS,
    AdapterCapabilities,
    BaseAdapter,
)
from voxflow.core.errors import NoAdapterAvailableError
from voxflow.core.events import Stage

# A class / zero-arg callable, or a lazy "package.module:ClassName" path
AdapterFactory = Union[Callable[..., BaseAdapter], str]


@dataclass
class AdapterDescriptor:
    """How to build one named adapter for a stage.

    Args:
        stage: The stage this adapter serves.
        name: Unique name within the stage.
        factory: Adapter class, callable, or lazy "module:Class" path.
        priority: Fallback order, lower ranks first (default: 100).
        capabilities: Declared streaming/language support.
        factory_kwargs: Keyword arguments passed to the factory.
    """

    stage: Stage
    name: str
    factory: AdapterFactory
    priority: int = 100
    capabilities: AdapterCapabilities = field(default_factory=AdapterCapabilities)
    factory_kwargs: dict[str, Any] = field(default_factory=dict)


class AdapterRegistry:
    """Holds adapter descriptors and their cached instances.

    Example:
        registry = AdapterRegistry()
        registry.register(AdapterDescriptor(Stage.STT, "whisper", WhisperSTT, priority=0))
        registry.register(AdapterDescriptor(Stage.STT, "deepgram", DeepgramSTT, priority=10))
        stt = registry.resolve(Stage.STT)              # whisper
        backup = registry.resolve_next(Stage.STT, exclude={"whisper"})  # deepgram
    """

    def __init__(self) -> None:
        self._descriptors: dict[Stage, dict[str, AdapterDescriptor]] = {
            stage: {} for stage in Stage
        }
        self._instances: dict[tuple[Stage, str], BaseAdapter] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, descriptor: AdapterDescriptor) -> None:
        """Add a named factory for a stage.

        Re-registering a name replaces its descriptor; an instance already
        cached under that name stays cached until released.
        """
        stage_map = self._descriptors[descriptor.stage]
        if descriptor.name in stage_map:
            logger.warning(
                f"Replacing {descriptor.stage.value.upper()} adapter: {descriptor.name}"
            )
        stage_map[descriptor.name] = descriptor
        logger.debug(
            f"Registered {descriptor.stage.value.upper()} adapter: "
            f"{descriptor.name} (priority={descriptor.priority})"
        )

    def set_priority(self, stage: Stage, name: str, priority: int) -> None:
        """Re-rank a registered descriptor."""
        descriptor = self._descriptors[stage].get(name)
        if descriptor is None:
            raise KeyError(f"Unknown {stage.value.upper()} adapter '{name}'")
        descriptor.priority = priority

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def descriptors(self, stage: Stage) -> list[AdapterDescriptor]:
        """Descriptors for a stage, highest priority first.

        Ties keep registration order.
        """
        return sorted(self._descriptors[stage].values(), key=lambda d: d.priority)

    def resolve(self, stage: Stage, preferred_name: str | None = None) -> BaseAdapter:
        """Return the adapter for ``stage``, creating it on first use.

        Args:
            stage: Stage to resolve.
            preferred_name: Adapter to use if registered; otherwise the
                highest-priority descriptor is used.

        Raises:
            NoAdapterAvailableError: If the stage has no registrations.
        """
        ranked = self.descriptors(stage)
        if not ranked:
            raise NoAdapterAvailableError(stage)

        descriptor = ranked[0]
        if preferred_name:
            preferred = self._descriptors[stage].get(preferred_name)
            if preferred is not None:
                descriptor = preferred
            else:
                available = ", ".join(d.name for d in ranked)
                logger.warning(
                    f"Unknown {stage.value.upper()} adapter '{preferred_name}', "
                    f"using '{descriptor.name}'. Available: {available}"
                )
        return self._instance(descriptor)

    def resolve_next(
        self,
        stage: Stage,
        exclude: Collection[str] = (),
    ) -> BaseAdapter | None:
        """Return the best-ranked adapter whose name is not in ``exclude``.

        Used for fallback: ``exclude`` holds the adapters already attempted
        within the current turn. Returns None when nothing is left.
        """
        for descriptor in self.descriptors(stage):
            if descriptor.name not in exclude:
                return self._instance(descriptor)
        return None

    def _instance(self, descriptor: AdapterDescriptor) -> BaseAdapter:
        key = (descriptor.stage, descriptor.name)
        instance = self._instances.get(key)
        if instance is not None:
            return instance

        factory = self._resolve_factory(descriptor.factory)
        logger.info(
            f"Creating {descriptor.stage.value.upper()} adapter: {descriptor.name}"
        )
        instance = factory(**descriptor.factory_kwargs)

        contract = STAGE_CONTRACTS[descriptor.stage]
        if not isinstance(instance, contract):
            raise TypeError(
                f"Factory for {descriptor.stage.value.upper()} adapter "
                f"'{descriptor.name}' returned {type(instance).__name__}, "
                f"expected a {contract.__name__}"
            )

        instance.descriptor = descriptor
        self._instances[key] = instance
        return instance

    @staticmethod
    def _resolve_factory(ref: AdapterFactory) -> Callable[..., BaseAdapter]:
        """Resolve a factory reference, importing lazily if needed."""
        if isinstance(ref, str):
            module_path, class_name = ref.rsplit(":", 1)
            module = importlib.import_module(module_path)
            return getattr(module, class_name)
        return ref

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release(self, stage: Stage, name: str) -> bool:
        """Dispose and forget a cached instance.

        Returns:
            True if an instance was cached under that name.
        """
        instance = self._instances.pop((stage, name), None)
        if instance is None:
            return False
        try:
            await instance.dispose()
        except Exception as e:
            logger.error(f"Error disposing {stage.value.upper()} adapter '{name}': {e}")
        logger.debug(f"Released {stage.value.upper()} adapter: {name}")
        return True

    async def release_all(self) -> int:
        """Release every cached instance. Returns how many were released."""
        released = 0
        for stage, name in list(self._instances):
            if await self.release(stage, name):
                released += 1
        return released

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def available(self, stage: Stage) -> list[str]:
        """Registered adapter names for a stage, highest priority first."""
        return [d.name for d in self.descriptors(stage)]

    def is_cached(self, stage: Stage, name: str) -> bool:
        return (stage, name) in self._instances

    @property
    def cached_count(self) -> int:
        """Number of live adapter instances."""
        return len(self._instances)


def register_builtins(registry: AdapterRegistry) -> AdapterRegistry:
    """Register the adapters shipped with voxflow, with lazy import paths.

    The cloud adapters import their client libraries only when resolved.
    """
    registry.register(AdapterDescriptor(
        Stage.VAD, "energy", "voxflow.adapters.vad.energy:EnergyVAD",
        priority=100,
        capabilities=AdapterCapabilities(streaming=True, local=True),
    ))
    registry.register(AdapterDescriptor(
        Stage.STT, "deepgram", "voxflow.adapters.stt.deepgram:DeepgramSTT",
        priority=100,
        capabilities=AdapterCapabilities(streaming=True, languages=("en-US",)),
    ))
    registry.register(AdapterDescriptor(
        Stage.LLM, "openai", "voxflow.adapters.llm.openai:OpenAILLM",
        priority=100,
    ))
    registry.register(AdapterDescriptor(
        Stage.TTS, "elevenlabs", "voxflow.adapters.tts.elevenlabs:ElevenLabsTTS",
        priority=100,
    ))
    return registry
