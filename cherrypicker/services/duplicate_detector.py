"""
Duplicate Detector component.

The head branch of a cherry-pick is derived from the source change number
and the target branch, so an already open cherry-pick can be recognized from
the live list of open pull requests without any bot-side state.
"""

from typing import Dict, Iterable, List, Mapping, Tuple

from cherrypicker.models.cherry_pick import BranchOutcome, CherryPickRequest, SkipReason
from cherrypicker.models.events import ChangeSummary, RepositoryRef
from cherrypicker.services.review_client import ReviewClient
from cherrypicker.utils.logging import get_logger

logger = get_logger(__name__)

CHERRY_PICK_BRANCH_FORMAT = "cherry-pick-{number}-to-{branch}"


def cherry_pick_branch_name(source_number: int, target_branch: str) -> str:
    """Deterministic head branch name for a cherry-pick of a change onto a branch."""
    return CHERRY_PICK_BRANCH_FORMAT.format(number=source_number, branch=target_branch)


def split_head(head: str) -> Tuple[str, str]:
    """Split ``owner:branch`` into its parts; the owner is empty for bare branches."""
    owner, sep, branch = head.partition(":")
    if not sep:
        return "", head
    return owner, branch


class ExistingRequestIndex(Mapping[str, bool]):
    """
    Read-only map of target branch to "an open cherry-pick already exists".

    Only the target branches the index was built for are keys.
    """

    def __init__(self, entries: Dict[str, bool]):
        self._entries = dict(entries)

    @classmethod
    def build(
        cls,
        open_changes: Iterable[ChangeSummary],
        source_number: int,
        target_branches: Iterable[str],
        bot_name: str,
    ) -> "ExistingRequestIndex":
        expected = {
            cherry_pick_branch_name(source_number, branch): branch
            for branch in target_branches
        }
        entries = {branch: False for branch in expected.values()}

        for change in open_changes:
            owner, head_branch = split_head(change.head)
            if owner and owner != bot_name:
                continue
            branch = expected.get(head_branch)
            if branch is not None:
                entries[branch] = True

        return cls(entries)

    def __getitem__(self, branch: str) -> bool:
        return self._entries[branch]

    def __iter__(self):
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


class DuplicateDetector:
    """Drops requests already covered by an open cherry-pick pull request."""

    def __init__(self, review_client: ReviewClient, bot_name: str):
        self.review_client = review_client
        self.bot_name = bot_name

    async def filter(
        self,
        repository: RepositoryRef,
        requests: List[CherryPickRequest],
    ) -> Tuple[List[CherryPickRequest], List[BranchOutcome]]:
        """
        Split requests into new work and duplicate skips.

        Raises:
            ReviewAPIError: If the open pull requests cannot be listed
        """
        if not requests:
            return [], []

        open_changes = await self.review_client.list_open_changes(repository)
        index = ExistingRequestIndex.build(
            open_changes,
            requests[0].source_number,
            [request.target_branch for request in requests],
            self.bot_name,
        )

        remaining = []
        duplicates = []
        for request in requests:
            if not index[request.target_branch]:
                remaining.append(request)
                continue
            logger.info(
                f"Cherry-pick of #{request.source_number} to {request.target_branch} is already open",
                extra={
                    "repository": repository.full_name,
                    "source_number": request.source_number,
                    "target_branch": request.target_branch,
                },
            )
            duplicates.append(
                BranchOutcome.skipped(
                    request.target_branch,
                    SkipReason.DUPLICATE,
                    detail=cherry_pick_branch_name(request.source_number, request.target_branch),
                )
            )

        return remaining, duplicates
