"""Sales pipeline core: stage transitions, lead conversion, and rollups.

Exports:
    PipelineService / build_pipeline_service: Facade used by the API.
    StageTransitionEngine: Stage + probability writes.
    LeadConversionSequencer: Lead-to-customer saga.
    PipelineAggregator: Cached board and stats reads.
    Stage, probability_for: Stage table access.
"""

from src.app.pipeline.aggregator import PipelineAggregator
from src.app.pipeline.conversion import ConversionStep, LeadConversionSequencer
from src.app.pipeline.service import PipelineService, build_pipeline_service
from src.app.pipeline.stages import Stage, probability_for
from src.app.pipeline.transitions import StageTransitionEngine

__all__ = [
    "ConversionStep",
    "LeadConversionSequencer",
    "PipelineAggregator",
    "PipelineService",
    "Stage",
    "StageTransitionEngine",
    "build_pipeline_service",
    "probability_for",
]
