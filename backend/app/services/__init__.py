"""Services layer - Business logic and orchestration.

Services coordinate between repositories, integrations, and other services
to implement business use cases. They contain no direct database or
external API access - that's delegated to repositories and integrations.
"""

from app.services.admission import (
    AdmissionGate,
    BurstLimiter,
    BurstLimitExceeded,
    QuotaExceeded,
    QuotaService,
    create_admission_gate,
)
from app.services.context_aggregator import (
    ContextAggregator,
    ContextBlock,
    ContextLimits,
    UnknownPresetError,
)
from app.services.pipeline import (
    GenerationPipeline,
    PipelineValidationError,
    ProviderFailure,
    ProviderTimeout,
    UnknownStepError,
)
from app.services.record_store import SqlRecordStore, StoreUnavailableError

__all__ = [
    # Admission gate
    "AdmissionGate",
    "BurstLimiter",
    "BurstLimitExceeded",
    "QuotaExceeded",
    "QuotaService",
    "create_admission_gate",
    # Context aggregator
    "ContextAggregator",
    "ContextBlock",
    "ContextLimits",
    "UnknownPresetError",
    # Generation pipeline
    "GenerationPipeline",
    "PipelineValidationError",
    "ProviderFailure",
    "ProviderTimeout",
    "UnknownStepError",
    # Record store
    "SqlRecordStore",
    "StoreUnavailableError",
]
