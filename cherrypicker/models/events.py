"""Review event data models."""

from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class RepositoryRef(BaseModel):
    """Repository identity; the owner is the Azure DevOps project."""

    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class Identity(BaseModel):
    """A user of the review system."""

    login: str
    id: Optional[str] = None
    display_name: Optional[str] = None


class IssueComment(BaseModel):
    """Comment on a pull request conversation."""

    author: Identity
    body: str
    created_at: Optional[datetime] = None


class ChangeState(str, Enum):
    """Pull request state."""

    OPEN = "open"
    CLOSED = "closed"


class SourceChange(BaseModel):
    """The pull request a cherry-pick originates from."""

    number: int
    title: str
    body: Optional[str] = None
    base_branch: str
    state: ChangeState
    merged: bool = False
    author: Identity


class ChangeSummary(BaseModel):
    """Open pull request as listed by the review system."""

    number: int
    title: str
    head: str  # "<owner>:<branch>" or a bare branch name
    base: str


class CommentTrigger(BaseModel):
    """A comment was posted on a pull request."""

    kind: Literal["comment"] = "comment"
    repository: RepositoryRef
    change: SourceChange
    comment: IssueComment


class _StateTrigger(BaseModel):
    repository: RepositoryRef
    change: SourceChange
    # None means "not fetched yet"
    comments: Optional[List[IssueComment]] = None
    labels: Optional[List[str]] = None

    @property
    def hydrated(self) -> bool:
        return self.comments is not None and self.labels is not None


class MergeTrigger(_StateTrigger):
    """A pull request was closed by merging."""

    kind: Literal["merge"] = "merge"


class LabelTrigger(_StateTrigger):
    """A merged pull request was updated, e.g. labeled."""

    kind: Literal["label"] = "label"


Event = Annotated[
    Union[CommentTrigger, MergeTrigger, LabelTrigger],
    Field(discriminator="kind"),
]
