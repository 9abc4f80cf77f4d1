"""
Azure DevOps implementation of the review API.

Wraps the synchronous Azure DevOps Python SDK: every call runs in a worker
thread behind a circuit breaker. Read calls are retried with exponential
backoff; calls that create something are attempted once.
"""

import asyncio
import difflib
import time
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, TypeVar

from azure.devops.connection import Connection
from azure.devops.v7_1.git.models import (
    Comment,
    CommentThread,
    GitForkRef,
    GitPullRequest,
    GitPullRequestSearchCriteria,
    GitRepository,
    GitVersionDescriptor,
    IdentityRefWithVote,
    WebApiCreateTagRequestData,
)
from msrest.authentication import BasicAuthentication

from cherrypicker.models.events import (
    ChangeState,
    ChangeSummary,
    Identity,
    IssueComment,
    RepositoryRef,
    SourceChange,
)
from cherrypicker.services.duplicate_detector import split_head
from cherrypicker.services.review_client import (
    DuplicateChangeError,
    PermanentError,
    ReviewAPIError,
    TransientError,
)
from cherrypicker.utils.logging import get_logger, log_api_call
from cherrypicker.utils.resilience import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    create_azure_devops_circuit_breaker,
    retry_with_backoff,
)

logger = get_logger(__name__)

T = TypeVar("T")

REFS_HEADS = "refs/heads/"
PERMANENT_ERROR_KEYWORDS = ("unauthorized", "forbidden", "not found", "invalid", "already exists")
# TF401179: an active pull request for the source and target branch already exists
DUPLICATE_PULL_REQUEST_CODE = "TF401179"
BINARY_EXTENSIONS = {
    ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico",
    ".pdf", ".zip", ".tar", ".gz", ".rar", ".7z",
    ".exe", ".dll", ".so", ".dylib",
    ".class", ".jar", ".war",
    ".woff", ".woff2", ".ttf", ".eot",
}
NO_NEWLINE_MARKER = "\\ No newline at end of file\n"


def _strip_ref(ref: Optional[str]) -> str:
    if ref and ref.startswith(REFS_HEADS):
        return ref[len(REFS_HEADS):]
    return ref or ""


def _field(obj: Any, name: str, wire_name: Optional[str] = None) -> Any:
    """Read a field from an SDK model or from the plain dict msrest leaves for untyped fields."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(wire_name or name)
    return getattr(obj, name, None)


def _identity(ref: Any) -> Identity:
    return Identity(
        login=_field(ref, "unique_name", "uniqueName") or "",
        id=_field(ref, "id"),
        display_name=_field(ref, "display_name", "displayName"),
    )


def _is_binary_file(path: str) -> bool:
    return any(path.lower().endswith(ext) for ext in BINARY_EXTENSIONS)


def render_file_diff(path: str, old: Optional[str], new: Optional[str]) -> str:
    """
    Render one file change as a git-style unified diff.

    ``old`` is None for added files and ``new`` is None for deleted files.
    """
    old_name = f"a/{path}" if old is not None else "/dev/null"
    new_name = f"b/{path}" if new is not None else "/dev/null"

    header = [f"diff --git a/{path} b/{path}\n"]
    if old is None:
        header.append("new file mode 100644\n")
    elif new is None:
        header.append("deleted file mode 100644\n")

    body = []
    for line in difflib.unified_diff(
        (old or "").splitlines(keepends=True),
        (new or "").splitlines(keepends=True),
        fromfile=old_name,
        tofile=new_name,
    ):
        if not line.endswith("\n"):
            line += "\n" + NO_NEWLINE_MARKER
        body.append(line)

    if not body:
        return ""
    return "".join(header + body)


class AzureDevOpsReviewClient:
    """
    Review API over Azure DevOps pull requests.

    Repositories map to Azure DevOps as ``owner`` = project and ``name`` =
    repository name. Organization membership is membership of the configured
    ``members_team`` ("project/team").
    """

    def __init__(
        self,
        organization_url: str,
        personal_access_token: str,
        members_team: Optional[str] = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        """
        Initialize the client. No request is made until the first call.

        Args:
            organization_url: Azure DevOps organization URL
            personal_access_token: PAT for authentication
            members_team: "project/team" whose members may request cherry-picks
            max_retries: Maximum number of attempts for read calls
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds between retries
            circuit_breaker: Optional CircuitBreaker instance
        """
        self.organization_url = organization_url
        self.members_team = members_team
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.circuit_breaker = circuit_breaker or create_azure_devops_circuit_breaker()

        credentials = BasicAuthentication("", personal_access_token)
        self.connection = Connection(base_url=organization_url, creds=credentials)
        self._git_client = None
        self._core_client = None

    @property
    def git_client(self):
        if self._git_client is None:
            self._git_client = self.connection.clients.get_git_client()
        return self._git_client

    @property
    def core_client(self):
        if self._core_client is None:
            self._core_client = self.connection.clients.get_core_client()
        return self._core_client

    async def _call(self, endpoint: str, func: Callable[[], T], retry: bool = True) -> T:
        """
        Run an SDK call in a worker thread with circuit breaker and retries.

        Only transient failures count against the circuit breaker; an answer
        like "not found" means the service is up.

        Raises:
            PermanentError: For errors that won't succeed on retry
            TransientError: When all attempts are exhausted
        """

        def _classified():
            try:
                return func()
            except Exception as e:
                if any(keyword in str(e).lower() for keyword in PERMANENT_ERROR_KEYWORDS):
                    raise PermanentError(f"{endpoint}: {e}") from e
                raise TransientError(f"{endpoint}: {e}") from e

        @retry_with_backoff(
            max_retries=self.max_retries if retry else 1,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            exceptions=(TransientError,),
        )
        async def _attempt():
            return await self.circuit_breaker.call(
                lambda: asyncio.to_thread(_classified),
                healthy=(PermanentError,),
            )

        start_time = time.time()
        try:
            result = await _attempt()
        except CircuitBreakerOpenError as e:
            raise TransientError(str(e)) from e
        except ReviewAPIError as e:
            log_api_call(logger, service="azure_devops", endpoint=endpoint, error=str(e))
            raise

        log_api_call(
            logger,
            service="azure_devops",
            endpoint=endpoint,
            duration_ms=(time.time() - start_time) * 1000,
        )
        return result

    async def _get_pull_request(self, repository: RepositoryRef, number: int) -> GitPullRequest:
        return await self._call(
            "get_pull_request",
            lambda: self.git_client.get_pull_request(
                repository_id=repository.name,
                pull_request_id=number,
                project=repository.owner,
            ),
        )

    async def get_change(self, repository: RepositoryRef, number: int) -> SourceChange:
        pr = await self._get_pull_request(repository, number)
        return SourceChange(
            number=pr.pull_request_id,
            title=pr.title or "",
            body=pr.description,
            base_branch=_strip_ref(pr.target_ref_name),
            state=ChangeState.OPEN if pr.status == "active" else ChangeState.CLOSED,
            merged=pr.status == "completed",
            author=_identity(pr.created_by),
        )

    async def get_patch(self, repository: RepositoryRef, number: int) -> bytes:
        """
        Build the unified diff of a pull request.

        The diff spans the target branch commit the pull request was merged
        onto and its merge commit, as listed by the latest iteration.
        Binary files are left out.
        """
        pr = await self._get_pull_request(repository, number)
        base_commit = _field(pr.last_merge_target_commit, "commit_id")
        head_ref = pr.last_merge_commit or pr.last_merge_source_commit
        head_commit = _field(head_ref, "commit_id")
        if not base_commit or not head_commit:
            raise PermanentError(f"pull request #{number} has no merge commits to diff")

        iterations = await self._call(
            "get_pull_request_iterations",
            lambda: self.git_client.get_pull_request_iterations(
                repository_id=repository.name,
                pull_request_id=number,
                project=repository.owner,
            ),
        )
        if not iterations:
            raise PermanentError(f"pull request #{number} has no iterations")
        latest = iterations[-1].id

        changes = await self._call(
            "get_pull_request_iteration_changes",
            lambda: self.git_client.get_pull_request_iteration_changes(
                repository_id=repository.name,
                pull_request_id=number,
                iteration_id=latest,
                project=repository.owner,
                compare_to=0,
            ),
        )

        diffs = []
        for entry in changes.change_entries or []:
            item = _field(entry, "item")
            if _field(item, "is_folder", "isFolder"):
                continue
            path = (_field(item, "path") or "").lstrip("/")
            if not path:
                continue
            if _is_binary_file(path):
                logger.info(f"Skipping binary file: {path}")
                continue

            change_type = str(_field(entry, "change_type", "changeType") or "edit").lower()
            original_path = (_field(entry, "original_path", "originalPath") or "").lstrip("/")

            old = None
            new = None
            if "add" not in change_type:
                old = await self._get_content(repository, original_path or path, base_commit)
            if "delete" not in change_type:
                new = await self._get_content(repository, path, head_commit)

            if original_path and original_path != path:
                diffs.append(render_file_diff(original_path, old, None))
                diffs.append(render_file_diff(path, None, new))
            else:
                diffs.append(render_file_diff(path, old, new))

        return "".join(diffs).encode("utf-8")

    async def _get_content(self, repository: RepositoryRef, path: str, commit_id: str) -> str:
        stream = await self._call(
            "get_item_content",
            lambda: b"".join(
                self.git_client.get_item_content(
                    repository_id=repository.name,
                    path=f"/{path}",
                    project=repository.owner,
                    version_descriptor=GitVersionDescriptor(version=commit_id, version_type="commit"),
                )
            ),
        )
        try:
            return stream.decode("utf-8")
        except UnicodeDecodeError as e:
            raise PermanentError(f"{path} at {commit_id[:8]} is not UTF-8 text") from e

    async def list_open_changes(self, repository: RepositoryRef) -> List[ChangeSummary]:
        prs = await self._call(
            "get_pull_requests",
            lambda: self.git_client.get_pull_requests(
                repository_id=repository.name,
                search_criteria=GitPullRequestSearchCriteria(status="active"),
                project=repository.owner,
            ),
        )

        summaries = []
        for pr in prs or []:
            branch = _strip_ref(pr.source_ref_name)
            fork_repository = _field(pr.fork_source, "repository")
            owner = _field(_field(fork_repository, "project"), "name") if fork_repository else None
            summaries.append(
                ChangeSummary(
                    number=pr.pull_request_id,
                    title=pr.title or "",
                    head=f"{owner}:{branch}" if owner else branch,
                    base=_strip_ref(pr.target_ref_name),
                )
            )
        return summaries

    async def create_change(
        self,
        repository: RepositoryRef,
        title: str,
        body: str,
        head: str,
        base: str,
    ) -> int:
        owner, branch = split_head(head)

        fork_source = None
        if owner and owner != repository.owner:
            fork = await self._call(
                "get_repository",
                lambda: self.git_client.get_repository(repository_id=repository.name, project=owner),
            )
            fork_source = GitForkRef(name=f"{REFS_HEADS}{branch}", repository=GitRepository(id=fork.id))

        pull_request = GitPullRequest(
            source_ref_name=f"{REFS_HEADS}{branch}",
            target_ref_name=f"{REFS_HEADS}{base}",
            title=title,
            description=body,
            fork_source=fork_source,
        )
        try:
            created = await self._call(
                "create_pull_request",
                lambda: self.git_client.create_pull_request(
                    pull_request,
                    repository_id=repository.name,
                    project=repository.owner,
                ),
                retry=False,
            )
        except PermanentError as e:
            if DUPLICATE_PULL_REQUEST_CODE in str(e):
                raise DuplicateChangeError(f"{head} into {base} is already open: {e}") from e
            raise
        return created.pull_request_id

    async def create_comment(self, repository: RepositoryRef, number: int, text: str) -> None:
        thread = CommentThread(
            comments=[Comment(content=text, comment_type="text")],
            status="active",
        )
        await self._call(
            "create_thread",
            lambda: self.git_client.create_thread(
                thread,
                repository_id=repository.name,
                pull_request_id=number,
                project=repository.owner,
            ),
            retry=False,
        )

    async def list_comments(self, repository: RepositoryRef, number: int) -> List[IssueComment]:
        threads = await self._call(
            "get_threads",
            lambda: self.git_client.get_threads(
                repository_id=repository.name,
                pull_request_id=number,
                project=repository.owner,
            ),
        )

        comments = []
        for thread in threads or []:
            if thread.is_deleted:
                continue
            for comment in thread.comments or []:
                if comment.is_deleted or comment.comment_type == "system":
                    continue
                comments.append(
                    IssueComment(
                        author=_identity(comment.author),
                        body=comment.content or "",
                        created_at=comment.published_date,
                    )
                )

        oldest = datetime.min.replace(tzinfo=timezone.utc)
        comments.sort(key=lambda c: c.created_at or oldest)
        return comments

    async def get_labels(self, repository: RepositoryRef, number: int) -> List[str]:
        labels = await self._call(
            "get_pull_request_labels",
            lambda: self.git_client.get_pull_request_labels(
                repository_id=repository.name,
                pull_request_id=number,
                project=repository.owner,
            ),
        )
        return [label.name for label in labels or [] if label.active is not False]

    async def add_label(self, repository: RepositoryRef, number: int, label: str) -> None:
        await self._call(
            "create_pull_request_label",
            lambda: self.git_client.create_pull_request_label(
                WebApiCreateTagRequestData(name=label),
                repository_id=repository.name,
                pull_request_id=number,
                project=repository.owner,
            ),
            retry=False,
        )

    async def is_org_member(self, user: Identity) -> bool:
        if not self.members_team:
            raise PermanentError("no members team is configured")
        project, _, team = self.members_team.partition("/")

        members = await self._call(
            "get_team_members_with_extended_properties",
            lambda: self.core_client.get_team_members_with_extended_properties(
                project_id=project,
                team_id=team,
            ),
        )

        login = user.login.lower()
        for member in members or []:
            identity = _identity(member.identity)
            if identity.login.lower() == login or (user.id and identity.id == user.id):
                return True
        return False

    async def assign(self, repository: RepositoryRef, number: int, users: List[Identity]) -> None:
        for user in users:
            if not user.id:
                raise PermanentError(f"cannot assign {user.login}: identity id unknown")
            await self._call(
                "create_pull_request_reviewer",
                lambda user=user: self.git_client.create_pull_request_reviewer(
                    IdentityRefWithVote(id=user.id),
                    repository_id=repository.name,
                    pull_request_id=number,
                    reviewer_id=user.id,
                    project=repository.owner,
                ),
                retry=False,
            )


def get_review_client() -> AzureDevOpsReviewClient:
    """
    Factory function to create the review client from settings.

    Returns:
        AzureDevOpsReviewClient configured with application settings
    """
    from cherrypicker.config import settings

    return AzureDevOpsReviewClient(
        organization_url=f"https://dev.azure.com/{settings.azure_devops_org}",
        personal_access_token=settings.azure_devops_pat,
        members_team=settings.members_team,
        max_retries=settings.api_max_retries,
    )
