"""Stage ledger and checkpoint store for the delivery pipeline."""

from delivery_autopilot.pipeline.checkpoint import (
    DELIVERY_STEPS,
    Checkpoint,
    CheckpointStore,
    DeliveryStep,
    next_step,
    normalize_step,
)
from delivery_autopilot.pipeline.stages import (
    STAGE_ORDER,
    GateDecision,
    Stage,
    StageGateError,
    StageLedger,
    StageLedgerStore,
    StageRecord,
    StageState,
    can_enter,
    parse_stage,
    require_entry,
    stage_rank,
)

__all__ = [
    "DELIVERY_STEPS",
    "STAGE_ORDER",
    "Checkpoint",
    "CheckpointStore",
    "DeliveryStep",
    "GateDecision",
    "Stage",
    "StageGateError",
    "StageLedger",
    "StageLedgerStore",
    "StageRecord",
    "StageState",
    "can_enter",
    "next_step",
    "normalize_step",
    "parse_stage",
    "require_entry",
    "stage_rank",
]
