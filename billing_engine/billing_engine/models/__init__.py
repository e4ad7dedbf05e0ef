"""Domain models for the add-on billing engine."""

from billing_engine.models.replenish import (
    AttemptStatus,
    CandidateResult,
    CandidateStatus,
    ChargeResult,
    ChargeStatus,
    ReplenishCandidate,
    ReplenishSummary,
)

__all__ = [
    "AttemptStatus",
    "CandidateResult",
    "CandidateStatus",
    "ChargeResult",
    "ChargeStatus",
    "ReplenishCandidate",
    "ReplenishSummary",
]
