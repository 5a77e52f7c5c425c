"""voxflow pipeline - session lifecycle and turn orchestration.

Usage:
    from voxflow.pipeline import PipelineManager

    manager = PipelineManager(registry)
    await manager.initialize(settings)
    await manager.start()
"""

from voxflow.pipeline.cancellation import CancelToken
from voxflow.pipeline.history import ConversationHistory
from voxflow.pipeline.manager import PipelineManager
from voxflow.pipeline.metrics import MetricsCollector
from voxflow.pipeline.runner import StageResult, StageRunner

__all__ = [
    "PipelineManager",
    "StageRunner",
    "StageResult",
    "CancelToken",
    "ConversationHistory",
    "MetricsCollector",
]
