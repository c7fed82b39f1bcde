"""Triage processing engines.

This package provides the core processing engines:
- Reclassification pipeline for a single conversation
- Correction recorder with sender rule learning
- Batch reconciler for paging through a workspace inbox
"""

from inbox_triage.engine.batch import (
    BatchItemError,
    BatchItemResult,
    BatchMode,
    BatchOptions,
    BatchReconciler,
    BatchResult,
    BatchRunSummary,
)
from inbox_triage.engine.corrections import (
    CorrectionOutcome,
    CorrectionRecorder,
    ExplicitRuleCorrection,
    NoRuleCorrection,
    ReviewCorrection,
)
from inbox_triage.engine.reclassify import (
    ReclassificationPipeline,
    ReclassifyOptions,
    ReclassifyResult,
    TriageState,
)

__all__ = [
    # Batch
    "BatchItemError",
    "BatchItemResult",
    "BatchMode",
    "BatchOptions",
    "BatchReconciler",
    "BatchResult",
    "BatchRunSummary",
    # Corrections
    "CorrectionOutcome",
    "CorrectionRecorder",
    "ExplicitRuleCorrection",
    "NoRuleCorrection",
    "ReviewCorrection",
    # Reclassification
    "ReclassificationPipeline",
    "ReclassifyOptions",
    "ReclassifyResult",
    "TriageState",
]
