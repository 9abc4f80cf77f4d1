"""Data models for the cherry-pick bot."""

from .api_response import WebhookResponse
from .cherry_pick import (
    BranchOutcome,
    CherryPickRequest,
    EventResult,
    FailureCause,
    NewChangeRequest,
    OutcomeStatus,
    SkipReason,
)
from .events import (
    ChangeState,
    ChangeSummary,
    CommentTrigger,
    Event,
    Identity,
    IssueComment,
    LabelTrigger,
    MergeTrigger,
    RepositoryRef,
    SourceChange,
)

__all__ = [
    # Event models
    "RepositoryRef",
    "Identity",
    "IssueComment",
    "ChangeState",
    "SourceChange",
    "ChangeSummary",
    "CommentTrigger",
    "MergeTrigger",
    "LabelTrigger",
    "Event",
    # Cherry-pick models
    "CherryPickRequest",
    "OutcomeStatus",
    "SkipReason",
    "FailureCause",
    "BranchOutcome",
    "EventResult",
    "NewChangeRequest",
    # API response models
    "WebhookResponse",
]
