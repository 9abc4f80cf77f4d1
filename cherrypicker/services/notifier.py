"""
Notifier component.

Reports branch outcomes back on the source pull request: status comments
for created cherry-picks, conflict explanations, pending acknowledgements
for unmerged changes and, optionally, rejection notices. Notification
failures are logged and never change a branch outcome.
"""

from typing import Awaitable

from cherrypicker.models.cherry_pick import CherryPickRequest
from cherrypicker.models.events import RepositoryRef
from cherrypicker.services.review_client import ReviewAPIError, ReviewClient
from cherrypicker.services.trigger_parser import CHERRYPICK_LABEL_PREFIX
from cherrypicker.utils.logging import get_logger

logger = get_logger(__name__)


class Notifier:
    """Posts comments and assignments for cherry-pick outcomes."""

    def __init__(self, review_client: ReviewClient, assign_via_api: bool = False):
        self.review_client = review_client
        self.assign_via_api = assign_via_api

    async def _safely(self, action: str, call: Awaitable[None], request: CherryPickRequest) -> bool:
        try:
            await call
            return True
        except ReviewAPIError as e:
            logger.error(
                f"Failed to {action}: {e}",
                extra={
                    "source_number": request.source_number,
                    "target_branch": request.target_branch,
                },
            )
            return False

    async def notify_created(
        self,
        repository: RepositoryRef,
        request: CherryPickRequest,
        number: int,
    ) -> None:
        """Assign the requester (when configured) and report the new pull request."""
        if self.assign_via_api:
            await self._safely(
                f"assign {request.requester.login} to #{number}",
                self.review_client.assign(repository, number, [request.requester]),
                request,
            )

        await self._safely(
            "post creation comment",
            self.review_client.create_comment(
                repository,
                request.source_number,
                f"@{request.requester.login}: new pull request created: #{number}",
            ),
            request,
        )

    async def notify_conflict(
        self,
        repository: RepositoryRef,
        request: CherryPickRequest,
        detail: str,
    ) -> None:
        """Explain that the patch did not apply to the target branch."""
        text = (
            f"@{request.requester.login}: #{request.source_number} failed to apply on top of "
            f"branch \"{request.target_branch}\":\n```\n{detail}\n```"
        )
        await self._safely(
            "post conflict comment",
            self.review_client.create_comment(repository, request.source_number, text),
            request,
        )

    async def notify_pending(self, repository: RepositoryRef, request: CherryPickRequest) -> None:
        """Acknowledge a request on an unmerged change and label it for the merge event."""
        await self._safely(
            "label pending cherry-pick",
            self.review_client.add_label(
                repository,
                request.source_number,
                f"{CHERRYPICK_LABEL_PREFIX}{request.target_branch}",
            ),
            request,
        )
        text = (
            f"@{request.requester.login}: once the present PR merges, I will cherry-pick it "
            f"on top of {request.target_branch} in a new PR and assign it to you."
        )
        await self._safely(
            "post pending comment",
            self.review_client.create_comment(repository, request.source_number, text),
            request,
        )

    async def notify_unauthorized(self, repository: RepositoryRef, request: CherryPickRequest) -> None:
        """Tell a non-member that only organization members may request cherry-picks."""
        text = (
            f"@{request.requester.login}: only organization members may request cherry-picks. "
            "You can still do the cherry-pick manually."
        )
        await self._safely(
            "post rejection comment",
            self.review_client.create_comment(repository, request.source_number, text),
            request,
        )
