"""
Webhook endpoints for Azure DevOps Service Hooks.
"""

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Request
from pydantic import ValidationError

from cherrypicker.config import settings
from cherrypicker.models.api_response import WebhookResponse
from cherrypicker.models.events import (
    ChangeState,
    CommentTrigger,
    Event,
    Identity,
    IssueComment,
    LabelTrigger,
    MergeTrigger,
    RepositoryRef,
    SourceChange,
)
from cherrypicker.services.azure_review_client import get_review_client
from cherrypicker.services.cherry_picker import CherryPicker, CherryPickError
from cherrypicker.services.working_copy import GitWorkingCopyProvider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

COMMENT_EVENT = "ms.vss-code.git-pullrequest-comment-event"
MERGED_EVENT = "git.pullrequest.merged"
UPDATED_EVENT = "git.pullrequest.updated"


def get_cherry_picker() -> CherryPicker:
    """Create the cherry picker wired to Azure DevOps and local working copies."""
    provider = GitWorkingCopyProvider(
        base_dir=settings.working_copy_dir,
        remote_template=settings.git_remote_template,
        org=settings.azure_devops_org,
        fork_repos=settings.fork_repos,
        bot_name=settings.bot_name,
        token=settings.azure_devops_pat,
    )
    return CherryPicker(
        review_client=get_review_client(),
        provider=provider,
        bot_name=settings.bot_name,
        assign_via_api=settings.assign_via_api,
        assign_via_comment=settings.assign_via_comment,
        notify_unauthorized=settings.notify_unauthorized,
    )


cherry_picker = get_cherry_picker()


def verify_webhook_signature(payload: bytes, signature: Optional[str]) -> bool:
    """
    Verify webhook signature for security.

    Args:
        payload: Raw request payload
        signature: Hex HMAC-SHA256 from the request header, optionally prefixed with "sha256="

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature:
        return False

    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]

    expected_signature = hmac.new(
        settings.webhook_secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()

    return hmac.compare_digest(signature, expected_signature)


def _identity(data: Dict[str, Any]) -> Identity:
    return Identity(
        login=data.get("uniqueName", ""),
        id=data.get("id"),
        display_name=data.get("displayName"),
    )


def _repository(pull_request: Dict[str, Any]) -> RepositoryRef:
    repository = pull_request.get("repository") or {}
    return RepositoryRef(
        owner=(repository.get("project") or {}).get("name", ""),
        name=repository.get("name", ""),
    )


def _source_change(pull_request: Dict[str, Any]) -> SourceChange:
    status = pull_request.get("status", "")
    return SourceChange(
        number=pull_request["pullRequestId"],
        title=pull_request.get("title", ""),
        body=pull_request.get("description"),
        base_branch=pull_request.get("targetRefName", "").replace("refs/heads/", "", 1),
        state=ChangeState.OPEN if status == "active" else ChangeState.CLOSED,
        merged=status == "completed",
        author=_identity(pull_request.get("createdBy") or {}),
    )


def parse_webhook_event(payload: Dict[str, Any]) -> Optional[Event]:
    """
    Convert an Azure DevOps service hook payload into a trigger event.

    Returns:
        The event, or None for deliveries that cannot trigger a cherry-pick

    Raises:
        KeyError, ValidationError: If the payload misses required fields
    """
    event_type = payload.get("eventType", "")
    resource = payload.get("resource") or {}

    if event_type == COMMENT_EVENT:
        pull_request = resource["pullRequest"]
        comment = resource["comment"]
        return CommentTrigger(
            repository=_repository(pull_request),
            change=_source_change(pull_request),
            comment=IssueComment(
                author=_identity(comment.get("author") or {}),
                body=comment.get("content") or "",
                created_at=comment.get("publishedDate"),
            ),
        )

    if event_type == MERGED_EVENT:
        if resource.get("mergeStatus") != "succeeded":
            return None
        return MergeTrigger(repository=_repository(resource), change=_source_change(resource))

    if event_type == UPDATED_EVENT:
        if resource.get("status") != "completed":
            return None
        return LabelTrigger(repository=_repository(resource), change=_source_change(resource))

    return None


async def process_event_async(event: Event) -> None:
    """
    Process a trigger event in the background.

    Args:
        event: Event to process
    """
    try:
        await cherry_picker.handle_event(event)
    except CherryPickError as e:
        logger.error(f"Cherry-pick of #{event.change.number} aborted: {e}")
    except Exception as e:
        logger.error(f"Error processing cherry-pick event: {e}", exc_info=True)


@router.post("/azure-devops", response_model=WebhookResponse)
async def handle_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_hub_signature: str = Header(None, alias="X-Hub-Signature-256")
) -> WebhookResponse:
    """
    Receive Azure DevOps service hook deliveries.

    This endpoint:
    1. Validates the webhook signature
    2. Converts the payload into a trigger event
    3. Returns 200 OK immediately and handles the event in the background

    Raises:
        HTTPException: If signature validation fails or payload is invalid
    """
    payload = await request.body()

    if not verify_webhook_signature(payload, x_hub_signature):
        logger.warning("Invalid webhook signature received")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        payload_json: Dict[str, Any] = await request.json()
        event = parse_webhook_event(payload_json)
    except (AttributeError, KeyError, TypeError, ValueError, ValidationError) as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    if event is None:
        event_type = payload_json.get("eventType", "")
        logger.info(f"Ignoring event type: {event_type}")
        return WebhookResponse(
            status="ignored",
            message=f"Event type {event_type} not processed"
        )

    logger.info(
        f"Received {event.kind} trigger for PR {event.change.number} "
        f"in repository {event.repository.full_name}"
    )
    background_tasks.add_task(process_event_async, event)

    return WebhookResponse(
        status="accepted",
        message=f"{event.kind} event for PR {event.change.number} accepted for processing"
    )
