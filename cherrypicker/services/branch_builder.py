"""
Branch Builder component.

Replays a source change's patch onto the tip of a target branch inside the
repository's working copy and pushes the result to the bot's fork. All
git work for one repository happens while holding that repository's lock.
"""

import asyncio
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Protocol

from cherrypicker.models.cherry_pick import CherryPickRequest
from cherrypicker.models.events import RepositoryRef
from cherrypicker.services.duplicate_detector import cherry_pick_branch_name
from cherrypicker.utils.logging import get_logger

logger = get_logger(__name__)


class WorkingCopyError(Exception):
    """Git or network failure in the working copy."""


class PatchConflictError(WorkingCopyError):
    """The patch does not apply cleanly to the target branch."""


class WorkingCopy(Protocol):
    """Exclusive handle on a repository's working copy."""

    def checkout_new_branch(self, base: str, name: str) -> None:
        ...

    def apply_patch(self, patch: bytes, message: str) -> None:
        ...

    def push(self, branch: str) -> None:
        ...


class WorkingCopyProvider(Protocol):
    """Hands out working copies, one holder per repository at a time."""

    def acquire(self, repository: RepositoryRef) -> AbstractAsyncContextManager[WorkingCopy]:
        ...

    def has_fork(self, repository: RepositoryRef) -> bool:
        ...


@dataclass(frozen=True)
class BuiltBranch:
    """A cherry-pick branch pushed to the bot's fork."""

    name: str
    target_branch: str


def commit_message(request: CherryPickRequest) -> str:
    """Commit message for the replayed patch."""
    return (
        f"{request.source_title}\n\n"
        f"Automated cherry-pick of #{request.source_number} onto {request.target_branch}."
    )


class BranchBuilder:
    """Creates and pushes the deterministic cherry-pick branch."""

    def __init__(self, provider: WorkingCopyProvider):
        self.provider = provider

    async def build(
        self,
        repository: RepositoryRef,
        request: CherryPickRequest,
        patch: bytes,
    ) -> BuiltBranch:
        """
        Build the cherry-pick branch for one request.

        Args:
            repository: Source repository
            request: Cherry-pick request to build
            patch: Unified diff of the source change

        Returns:
            The pushed branch

        Raises:
            PatchConflictError: If the patch does not apply to the target branch
            WorkingCopyError: On any other git or network failure
        """
        name = cherry_pick_branch_name(request.source_number, request.target_branch)
        log = logger.with_context(
            repository=repository.full_name,
            source_number=request.source_number,
            target_branch=request.target_branch,
        )

        async with self.provider.acquire(repository) as working_copy:
            log.info(f"Creating branch {name}")
            await asyncio.to_thread(working_copy.checkout_new_branch, request.target_branch, name)

            log.info("Applying patch")
            await asyncio.to_thread(working_copy.apply_patch, patch, commit_message(request))

            log.info(f"Pushing {name} to fork")
            await asyncio.to_thread(working_copy.push, name)

        return BuiltBranch(name=name, target_branch=request.target_branch)
