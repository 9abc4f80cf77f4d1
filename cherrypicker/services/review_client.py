"""
Review API capabilities consumed by the cherry-pick core.

The core only talks to the review system through :class:`ReviewClient`;
the Azure DevOps implementation lives in ``azure_review_client``.
"""

from typing import List, Protocol

from cherrypicker.models.events import (
    ChangeSummary,
    Identity,
    IssueComment,
    RepositoryRef,
    SourceChange,
)


class ReviewAPIError(Exception):
    """Base exception for review API failures."""


class TransientError(ReviewAPIError):
    """Transient error that may succeed on retry."""


class PermanentError(ReviewAPIError):
    """Permanent error that won't succeed on retry."""


class DuplicateChangeError(PermanentError):
    """An open pull request already proposes the same head onto the same base."""


class ReviewClient(Protocol):
    """Asynchronous review API used by the cherry-pick core."""

    async def get_change(self, repository: RepositoryRef, number: int) -> SourceChange:
        ...

    async def get_patch(self, repository: RepositoryRef, number: int) -> bytes:
        ...

    async def list_open_changes(self, repository: RepositoryRef) -> List[ChangeSummary]:
        ...

    async def create_change(
        self,
        repository: RepositoryRef,
        title: str,
        body: str,
        head: str,
        base: str,
    ) -> int:
        """Open a pull request; raises DuplicateChangeError if one is already open."""
        ...

    async def create_comment(self, repository: RepositoryRef, number: int, text: str) -> None:
        ...

    async def list_comments(self, repository: RepositoryRef, number: int) -> List[IssueComment]:
        ...

    async def get_labels(self, repository: RepositoryRef, number: int) -> List[str]:
        ...

    async def add_label(self, repository: RepositoryRef, number: int, label: str) -> None:
        ...

    async def is_org_member(self, user: Identity) -> bool:
        ...

    async def assign(self, repository: RepositoryRef, number: int, users: List[Identity]) -> None:
        ...
