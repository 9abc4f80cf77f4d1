"""
Cherry Picker component.

Handles one review event end to end: parses the requested target branches,
filters them by membership and by already open cherry-picks, then builds,
submits and reports every remaining branch independently. A branch failure
never affects its siblings; only a failure shared by every branch (listing
comments or open pull requests, fetching the patch, a missing fork) aborts
the event with :class:`CherryPickError`.
"""

import asyncio
from typing import List, Union

from cherrypicker.models.cherry_pick import (
    BranchOutcome,
    CherryPickRequest,
    EventResult,
    FailureCause,
    SkipReason,
)
from cherrypicker.models.events import (
    ChangeState,
    CommentTrigger,
    Event,
    LabelTrigger,
    MergeTrigger,
    RepositoryRef,
)
from cherrypicker.services.authorization import AuthorizationFilter
from cherrypicker.services.branch_builder import (
    BranchBuilder,
    PatchConflictError,
    WorkingCopyError,
    WorkingCopyProvider,
)
from cherrypicker.services.duplicate_detector import DuplicateDetector
from cherrypicker.services.notifier import Notifier
from cherrypicker.services.request_synthesizer import RequestSynthesizer
from cherrypicker.services.review_client import DuplicateChangeError, ReviewAPIError, ReviewClient
from cherrypicker.services.trigger_parser import parse_event
from cherrypicker.utils.logging import (
    get_logger,
    log_branch_outcome,
    log_error_with_context,
    log_trigger_event,
)

logger = get_logger(__name__)


class CherryPickError(Exception):
    """No branch of an event could be attempted."""


class CherryPicker:
    """
    Per-event cherry-pick state machine.

    Args:
        review_client: Review API
        provider: Working copy provider; must also answer ``has_fork``
        bot_name: Bot identity, used as the head owner of new pull requests
        assign_via_api: Assign the requester to new pull requests through the API
        assign_via_comment: Put an ``/assign`` directive in new pull request bodies
        notify_unauthorized: Answer non-member ``/cherrypick`` comments
    """

    def __init__(
        self,
        review_client: ReviewClient,
        provider: WorkingCopyProvider,
        bot_name: str,
        assign_via_api: bool = False,
        assign_via_comment: bool = False,
        notify_unauthorized: bool = False,
    ):
        if assign_via_api and assign_via_comment:
            raise ValueError("assign_via_api and assign_via_comment are mutually exclusive")

        self.review_client = review_client
        self.provider = provider
        self.notify_unauthorized = notify_unauthorized

        self.authorization = AuthorizationFilter(review_client)
        self.duplicates = DuplicateDetector(review_client, bot_name)
        self.builder = BranchBuilder(provider)
        self.synthesizer = RequestSynthesizer(review_client, bot_name, assign_via_comment)
        self.notifier = Notifier(review_client, assign_via_api)

    async def handle_event(self, event: Event) -> EventResult:
        """
        Process one trigger event.

        Args:
            event: Comment, merge or label trigger

        Returns:
            EventResult with one outcome per requested target branch

        Raises:
            CherryPickError: If a failure shared by all branches prevents any attempt
        """
        repository = event.repository
        change = event.change
        log = logger.with_context(
            repository=repository.full_name,
            source_number=change.number,
            event_kind=event.kind,
        )
        log_trigger_event(log, repository.full_name, change.number, event.kind)
        result = EventResult(repository=repository, source_number=change.number)

        if not change.merged:
            if isinstance(event, CommentTrigger) and change.state == ChangeState.OPEN:
                await self._acknowledge_pending(event, result)
            else:
                log.info(f"Pull request #{change.number} was not merged, ignoring")
            return result

        if isinstance(event, (MergeTrigger, LabelTrigger)) and not event.hydrated:
            event = await self._hydrate(event)

        requests = await self._authorized_requests(event, result)
        if not requests:
            self._log_summary(log, result)
            return result

        try:
            requests, duplicates = await self.duplicates.filter(repository, requests)
        except ReviewAPIError as e:
            raise CherryPickError(f"cannot list open pull requests of {repository.full_name}: {e}") from e
        self._record(log, result, duplicates)
        if not requests:
            self._log_summary(log, result)
            return result

        if not self.provider.has_fork(repository):
            raise CherryPickError(f"no fork of {repository.full_name} is configured")

        try:
            patch = await self.review_client.get_patch(repository, change.number)
        except ReviewAPIError as e:
            raise CherryPickError(f"cannot fetch patch of #{change.number}: {e}") from e

        outcomes = await asyncio.gather(
            *(self._cherry_pick(repository, request, patch) for request in requests),
            return_exceptions=True,
        )
        for request, outcome in zip(requests, outcomes):
            if isinstance(outcome, BaseException):
                log_error_with_context(
                    log,
                    f"Unexpected error cherry-picking to {request.target_branch}",
                    outcome,
                    target_branch=request.target_branch,
                )
                outcome = BranchOutcome.failed(
                    request.target_branch, FailureCause.EXTERNAL, detail=str(outcome)
                )
            self._record(log, result, [outcome])

        self._log_summary(log, result)
        return result

    async def _hydrate(
        self, event: Union[MergeTrigger, LabelTrigger]
    ) -> Union[MergeTrigger, LabelTrigger]:
        try:
            comments = event.comments
            if comments is None:
                comments = await self.review_client.list_comments(event.repository, event.change.number)
            labels = event.labels
            if labels is None:
                labels = await self.review_client.get_labels(event.repository, event.change.number)
        except ReviewAPIError as e:
            raise CherryPickError(f"cannot read comments and labels of #{event.change.number}: {e}") from e
        return event.model_copy(update={"comments": comments, "labels": labels})

    async def _authorized_requests(self, event: Event, result: EventResult) -> List[CherryPickRequest]:
        log = logger.with_context(repository=event.repository.full_name, source_number=event.change.number)

        parsed = parse_event(event)
        self._record(log, result, parsed.invalid)
        if not parsed.requests:
            log.info("No cherry-pick requests found")
            return []

        authorized, rejected = await self.authorization.filter(parsed.requests)
        self._record(log, result, rejected)

        if rejected and self.notify_unauthorized and isinstance(event, CommentTrigger):
            for request in parsed.requests:
                if request not in authorized:
                    await self.notifier.notify_unauthorized(event.repository, request)

        return authorized

    async def _acknowledge_pending(self, event: CommentTrigger, result: EventResult) -> None:
        for request in await self._authorized_requests(event, result):
            logger.info(
                f"Pull request #{request.source_number} is not merged yet, "
                f"deferring cherry-pick to {request.target_branch}",
                extra={"repository": event.repository.full_name},
            )
            await self.notifier.notify_pending(event.repository, request)

    async def _cherry_pick(
        self,
        repository: RepositoryRef,
        request: CherryPickRequest,
        patch: bytes,
    ) -> BranchOutcome:
        """Build, submit and report one branch; always returns its outcome."""
        branch = request.target_branch
        try:
            built = await self.builder.build(repository, request, patch)
        except PatchConflictError as e:
            await self.notifier.notify_conflict(repository, request, str(e))
            return BranchOutcome.failed(branch, FailureCause.CONFLICT, detail=str(e))
        except WorkingCopyError as e:
            return BranchOutcome.failed(branch, FailureCause.EXTERNAL, detail=str(e))

        try:
            number = await self.synthesizer.submit(repository, request, built)
        except DuplicateChangeError as e:
            # another delivery for the same merge opened it first
            return BranchOutcome.skipped(branch, SkipReason.DUPLICATE, detail=str(e))
        except ReviewAPIError as e:
            return BranchOutcome.failed(branch, FailureCause.EXTERNAL, detail=str(e))

        await self.notifier.notify_created(repository, request, number)
        return BranchOutcome.created(branch, number)

    @staticmethod
    def _record(log, result: EventResult, outcomes: List[BranchOutcome]) -> None:
        for outcome in outcomes:
            log_branch_outcome(log, outcome)
            result.outcomes.append(outcome)

    @staticmethod
    def _log_summary(log, result: EventResult) -> None:
        total = len(result.outcomes)
        created = len(result.created)
        failed = len(result.failed)
        if failed:
            log.warning(
                f"Partial failure cherry-picking #{result.source_number}: "
                f"{created}/{total} created, {failed} failed",
                extra={"created_count": created, "failed_count": failed, "total_count": total},
            )
        else:
            log.info(
                f"Cherry-pick of #{result.source_number} done: {created}/{total} created",
                extra={"created_count": created, "total_count": total},
            )
