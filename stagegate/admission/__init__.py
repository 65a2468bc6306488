"""Job admission: catalog, idempotency, concurrency, quota, run gating and retry."""
from .catalog import STAGE_CATALOG, StageDefinition, get_stage, pipeline_order
from .errors import AdmissionError, InfrastructureError
from .service import Admitted, AdmissionOutcome, AdmissionRequest, AdmissionService, Rejected, Reused

__all__ = [
    "AdmissionError",
    "AdmissionOutcome",
    "AdmissionRequest",
    "AdmissionService",
    "Admitted",
    "InfrastructureError",
    "Rejected",
    "Reused",
    "STAGE_CATALOG",
    "StageDefinition",
    "get_stage",
    "pipeline_order",
]
