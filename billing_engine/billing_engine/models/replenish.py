"""Domain models for the auto-replenish job.

A *replenish attempt* tracks one charge for one ``(workspace, credit type)``
pair.  It is created in ``processing`` and transitions exactly once to a
terminal status.  ``requires_action`` is terminal for the job itself but
may later be resolved to ``succeeded`` or ``failed`` by a payment webhook.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from billing_engine.bundles import BundleName, CreditType


class AttemptStatus(str, Enum):
    """Lifecycle state of a persisted replenish attempt."""

    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REQUIRES_ACTION = "requires_action"


class CandidateStatus(str, Enum):
    """Outcome of processing one candidate within a single job run."""

    SUCCESSFUL = "successful"
    FAILED = "failed"
    SKIPPED = "skipped"
    REQUIRES_ACTION = "requires_action"


class ChargeStatus(str, Enum):
    """Outcome reported by the payment provider for a direct charge."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REQUIRES_ACTION = "requires_action"


class ReplenishCandidate(BaseModel):
    """A workspace balance that is below its auto-replenish threshold.

    For call minutes ``balance`` and ``threshold`` are both expressed in
    whole minutes.
    """

    workspace_id: str = Field(..., min_length=1)
    credit_type: CreditType
    bundle: BundleName | None = Field(
        default=None,
        description="Bundle configured for auto-replenish, if any.",
    )
    balance: int
    threshold: int


class ChargeResult(BaseModel):
    """Result of a direct charge against a saved payment method."""

    status: ChargeStatus
    payment_intent_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == ChargeStatus.SUCCEEDED


class CandidateResult(BaseModel):
    """Per-candidate line in the job summary."""

    model_config = ConfigDict(populate_by_name=True)

    workspace_id: str = Field(..., serialization_alias="workspaceId")
    credit_type: CreditType = Field(..., serialization_alias="type")
    status: CandidateStatus
    error: str | None = None
    attempt_id: str | None = Field(default=None, exclude=True)


class ReplenishSummary(BaseModel):
    """Aggregate result of one job invocation.

    The summary is owned by the caller and filled in place, so partial
    results survive an unexpected failure half-way through a run.
    """

    success: bool = True
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    details: list[CandidateResult] = Field(default_factory=list)
    error: str | None = None

    def record(self, result: CandidateResult) -> None:
        """Tally *result* into the counters and append it to ``details``.

        ``requires_action`` outcomes count as failures for this run.
        """
        self.processed += 1
        if result.status == CandidateStatus.SUCCESSFUL:
            self.successful += 1
        elif result.status == CandidateStatus.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
        self.details.append(result)

    def to_response(self) -> dict[str, object]:
        """Serialise with the camelCase keys exposed over HTTP."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
