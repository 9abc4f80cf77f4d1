"""
Authorization Filter component.

Keeps only the requests whose requester belongs to the organization.
Membership is looked up once per distinct requester and lookups fail
closed: an error drops the request.
"""

from typing import Dict, List, Tuple

from cherrypicker.models.cherry_pick import BranchOutcome, CherryPickRequest, SkipReason
from cherrypicker.services.review_client import ReviewAPIError, ReviewClient
from cherrypicker.utils.logging import get_logger

logger = get_logger(__name__)


class AuthorizationFilter:
    """Filters cherry-pick requests by organization membership."""

    def __init__(self, review_client: ReviewClient):
        self.review_client = review_client

    async def filter(
        self, requests: List[CherryPickRequest]
    ) -> Tuple[List[CherryPickRequest], List[BranchOutcome]]:
        """
        Split requests into authorized requests and unauthorized skips.

        Args:
            requests: Parsed cherry-pick requests

        Returns:
            Tuple of (authorized requests, skipped outcomes)
        """
        membership: Dict[str, bool] = {}
        for request in requests:
            login = request.requester.login
            if login not in membership:
                membership[login] = await self._is_member(request)

        authorized = []
        rejected = []
        for request in requests:
            if membership[request.requester.login]:
                authorized.append(request)
                continue
            logger.info(
                f"Dropping cherry-pick requested by non-member {request.requester.login}",
                extra={
                    "source_number": request.source_number,
                    "target_branch": request.target_branch,
                },
            )
            rejected.append(
                BranchOutcome.skipped(
                    request.target_branch,
                    SkipReason.UNAUTHORIZED,
                    detail=f"{request.requester.login} is not an organization member",
                )
            )

        return authorized, rejected

    async def _is_member(self, request: CherryPickRequest) -> bool:
        try:
            return await self.review_client.is_org_member(request.requester)
        except ReviewAPIError as e:
            logger.warning(
                f"Membership lookup for {request.requester.login} failed, denying: {e}",
                extra={"source_number": request.source_number},
            )
            return False
