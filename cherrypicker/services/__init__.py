"""Cherry-pick core and its external collaborators.

The GitPython working copy (``working_copy``) and the Azure DevOps review
client (``azure_review_client``) are imported from their modules directly.
"""

from cherrypicker.services.authorization import AuthorizationFilter
from cherrypicker.services.branch_builder import (
    BranchBuilder,
    BuiltBranch,
    PatchConflictError,
    WorkingCopyError,
)
from cherrypicker.services.cherry_picker import CherryPicker, CherryPickError
from cherrypicker.services.duplicate_detector import (
    DuplicateDetector,
    ExistingRequestIndex,
    cherry_pick_branch_name,
)
from cherrypicker.services.notifier import Notifier
from cherrypicker.services.request_synthesizer import RequestSynthesizer, extract_release_note
from cherrypicker.services.review_client import (
    DuplicateChangeError,
    PermanentError,
    ReviewAPIError,
    ReviewClient,
    TransientError,
)
from cherrypicker.services.trigger_parser import ParsedTriggers, parse_event

__all__ = [
    'AuthorizationFilter',
    'BranchBuilder',
    'BuiltBranch',
    'PatchConflictError',
    'WorkingCopyError',
    'CherryPicker',
    'CherryPickError',
    'DuplicateDetector',
    'ExistingRequestIndex',
    'cherry_pick_branch_name',
    'Notifier',
    'RequestSynthesizer',
    'extract_release_note',
    'ReviewAPIError',
    'ReviewClient',
    'TransientError',
    'PermanentError',
    'DuplicateChangeError',
    'ParsedTriggers',
    'parse_event',
]
