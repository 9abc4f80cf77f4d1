"""
Request Synthesizer component.

Builds the pull request for a pushed cherry-pick branch, carrying a
back-reference to the source change, an optional ``/assign`` directive and
the source change's release-note block, and submits it.
"""

import re
from typing import Optional

from cherrypicker.models.cherry_pick import CherryPickRequest, NewChangeRequest
from cherrypicker.models.events import RepositoryRef
from cherrypicker.services.branch_builder import BuiltBranch
from cherrypicker.services.review_client import ReviewClient
from cherrypicker.utils.logging import get_logger

logger = get_logger(__name__)

RELEASE_NOTE_MARKER = "```release-note"
RELEASE_NOTE_RE = re.compile(re.escape(RELEASE_NOTE_MARKER) + r".*?```", re.DOTALL)


def extract_release_note(body: Optional[str]) -> Optional[str]:
    """Return the release-note block of a change description verbatim, if any."""
    if not body:
        return None
    match = RELEASE_NOTE_RE.search(body)
    return match.group(0) if match else None


class RequestSynthesizer:
    """Synthesizes and submits cherry-pick pull requests."""

    def __init__(self, review_client: ReviewClient, bot_name: str, assign_via_comment: bool = False):
        self.review_client = review_client
        self.bot_name = bot_name
        self.assign_via_comment = assign_via_comment

    def synthesize(self, request: CherryPickRequest, branch: BuiltBranch) -> NewChangeRequest:
        """
        Build the pull request for a built branch.

        Args:
            request: The cherry-pick request
            branch: Branch pushed to the bot's fork

        Returns:
            Title, body, head and base of the new pull request
        """
        paragraphs = [f"This is an automated cherry-pick of #{request.source_number}"]
        if self.assign_via_comment:
            paragraphs.append(f"/assign {request.requester.login}")
        release_note = extract_release_note(request.source_body)
        if release_note:
            paragraphs.append(release_note)

        return NewChangeRequest(
            title=f"[{request.target_branch}] {request.source_title}",
            body="\n\n".join(paragraphs),
            head=f"{self.bot_name}:{branch.name}",
            base=request.target_branch,
        )

    async def submit(
        self,
        repository: RepositoryRef,
        request: CherryPickRequest,
        branch: BuiltBranch,
    ) -> int:
        """
        Synthesize and create the pull request.

        Returns:
            Number of the new pull request

        Raises:
            ReviewAPIError: If the review system rejects the pull request
        """
        new_change = self.synthesize(request, branch)
        number = await self.review_client.create_change(
            repository,
            title=new_change.title,
            body=new_change.body,
            head=new_change.head,
            base=new_change.base,
        )
        logger.info(
            f"Created cherry-pick #{number}: {new_change.title}",
            extra={
                "repository": repository.full_name,
                "source_number": request.source_number,
                "target_branch": request.target_branch,
            },
        )
        return number
