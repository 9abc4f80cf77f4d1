"""Cherry-pick request and outcome data models."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from .events import Identity, RepositoryRef


class CherryPickRequest(BaseModel):
    """One requested cherry-pick of a source change onto a target branch."""

    model_config = ConfigDict(frozen=True)

    source_number: int
    source_title: str
    source_body: Optional[str] = None
    target_branch: str
    requester: Identity


class OutcomeStatus(str, Enum):
    """Terminal state of one target branch."""

    CREATED = "created"
    SKIPPED = "skipped"
    FAILED = "failed"


class SkipReason(str, Enum):
    """Why a branch was dropped before any work was attempted."""

    UNAUTHORIZED = "unauthorized"
    DUPLICATE = "duplicate"
    INVALID_TARGET = "invalid_target"


class FailureCause(str, Enum):
    """Why a branch failed while being built or submitted."""

    CONFLICT = "conflict"
    EXTERNAL = "external"


class BranchOutcome(BaseModel):
    """Result for one target branch."""

    target_branch: str
    status: OutcomeStatus
    number: Optional[int] = None
    reason: Optional[SkipReason] = None
    cause: Optional[FailureCause] = None
    detail: Optional[str] = None

    @classmethod
    def created(cls, target_branch: str, number: int) -> "BranchOutcome":
        return cls(target_branch=target_branch, status=OutcomeStatus.CREATED, number=number)

    @classmethod
    def skipped(
        cls, target_branch: str, reason: SkipReason, detail: Optional[str] = None
    ) -> "BranchOutcome":
        return cls(
            target_branch=target_branch,
            status=OutcomeStatus.SKIPPED,
            reason=reason,
            detail=detail,
        )

    @classmethod
    def failed(
        cls, target_branch: str, cause: FailureCause, detail: Optional[str] = None
    ) -> "BranchOutcome":
        return cls(
            target_branch=target_branch,
            status=OutcomeStatus.FAILED,
            cause=cause,
            detail=detail,
        )


class EventResult(BaseModel):
    """Aggregated outcomes of handling one event."""

    repository: RepositoryRef
    source_number: int
    outcomes: List[BranchOutcome] = []

    def _with_status(self, status: OutcomeStatus) -> List[BranchOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status == status]

    @property
    def created(self) -> List[BranchOutcome]:
        return self._with_status(OutcomeStatus.CREATED)

    @property
    def skipped(self) -> List[BranchOutcome]:
        return self._with_status(OutcomeStatus.SKIPPED)

    @property
    def failed(self) -> List[BranchOutcome]:
        return self._with_status(OutcomeStatus.FAILED)


class NewChangeRequest(BaseModel):
    """Pull request about to be submitted for a built branch."""

    title: str
    body: str
    head: str
    base: str
