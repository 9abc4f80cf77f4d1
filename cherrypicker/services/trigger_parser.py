"""
Trigger Parser component.

Turns a review event into the ordered list of cherry-pick requests it
carries. Comment triggers contribute their own comment; merge and label
triggers contribute every historical ``/cherrypick`` comment followed by the
``cherrypick/<branch>`` labels. Requests are de-duplicated by target branch,
first occurrence wins.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from cherrypicker.models.cherry_pick import BranchOutcome, CherryPickRequest, SkipReason
from cherrypicker.models.events import CommentTrigger, Event, Identity, SourceChange
from cherrypicker.utils.logging import get_logger

logger = get_logger(__name__)

CHERRYPICK_COMMAND_RE = re.compile(r"^/cherrypick[ \t]+(?P<branch>\S+)[ \t]*(?:\n|$)")
CHERRYPICK_LABEL_PREFIX = "cherrypick/"

# Characters git refuses in ref names
_INVALID_REF_CHARS_RE = re.compile(r"[\x00-\x20\x7f~^:?*\[\\]")


@dataclass
class ParsedTriggers:
    """Requests extracted from one event plus the targets dropped as invalid."""

    requests: List[CherryPickRequest] = field(default_factory=list)
    invalid: List[BranchOutcome] = field(default_factory=list)


def parse_command(body: str) -> Optional[str]:
    """
    Extract the target branch of a ``/cherrypick <branch>`` comment.

    Trailing carriage returns and whitespace are ignored. Returns None for
    any comment that is not a cherry-pick command.
    """
    match = CHERRYPICK_COMMAND_RE.match(body.rstrip())
    if not match:
        return None
    return match.group("branch")


def parse_label(label: str) -> Optional[str]:
    """Extract the target branch of a ``cherrypick/<branch>`` label."""
    if not label.startswith(CHERRYPICK_LABEL_PREFIX):
        return None
    branch = label[len(CHERRYPICK_LABEL_PREFIX):].strip()
    return branch or None


def is_valid_branch_name(branch: str) -> bool:
    """Check a branch name against git's ref name rules."""
    if not branch or branch in ("@", "HEAD"):
        return False
    if _INVALID_REF_CHARS_RE.search(branch):
        return False
    if ".." in branch or "//" in branch or "@{" in branch:
        return False
    if branch.startswith(("-", "/", ".")) or branch.endswith(("/", ".", ".lock")):
        return False
    return all(part and not part.startswith(".") for part in branch.split("/"))


def _candidates(event: Event) -> Iterable[Tuple[str, Identity]]:
    if isinstance(event, CommentTrigger):
        branch = parse_command(event.comment.body)
        if branch:
            yield branch, event.comment.author
        return

    for comment in event.comments or []:
        branch = parse_command(comment.body)
        if branch:
            yield branch, comment.author
    for label in event.labels or []:
        branch = parse_label(label)
        if branch:
            yield branch, event.change.author


def _invalid_reason(change: SourceChange, branch: str) -> Optional[str]:
    if branch == change.base_branch:
        return f"base branch ({branch}) needs to differ from target branch ({branch})"
    if not is_valid_branch_name(branch):
        return f"{branch!r} is not a valid branch name"
    return None


def parse_event(event: Event) -> ParsedTriggers:
    """
    Extract cherry-pick requests from an event.

    Args:
        event: Comment, merge or label trigger; merge and label triggers must
            already carry their comments and labels

    Returns:
        ParsedTriggers with requests in first-seen order
    """
    change = event.change
    parsed = ParsedTriggers()
    seen = set()

    for branch, requester in _candidates(event):
        if branch in seen:
            continue
        seen.add(branch)

        reason = _invalid_reason(change, branch)
        if reason:
            logger.info(
                f"Dropping invalid cherry-pick target: {reason}",
                extra={"source_number": change.number, "target_branch": branch},
            )
            parsed.invalid.append(
                BranchOutcome.skipped(branch, SkipReason.INVALID_TARGET, detail=reason)
            )
            continue

        parsed.requests.append(
            CherryPickRequest(
                source_number=change.number,
                source_title=change.title,
                source_body=change.body,
                target_branch=branch,
                requester=requester,
            )
        )

    return parsed
