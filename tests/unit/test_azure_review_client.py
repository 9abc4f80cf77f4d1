"""Unit tests for the Azure DevOps review client."""

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import Mock, patch

import pytest
from azure.devops.v7_1.git.models import GitPullRequest

from cherrypicker.models.events import ChangeState, Identity, RepositoryRef
from cherrypicker.services.azure_review_client import (
    AzureDevOpsReviewClient,
    render_file_diff,
)
from cherrypicker.services.review_client import DuplicateChangeError, PermanentError, TransientError
from cherrypicker.utils.resilience import CircuitState


@pytest.fixture
def mock_git_client():
    """Create a mock GitClient."""
    return Mock()


@pytest.fixture
def mock_core_client():
    """Create a mock CoreClient."""
    return Mock()


@pytest.fixture
def review_client(mock_git_client, mock_core_client):
    """Create AzureDevOpsReviewClient with mocked SDK clients and no backoff delay."""
    with patch("cherrypicker.services.azure_review_client.Connection"):
        client = AzureDevOpsReviewClient(
            organization_url="https://dev.azure.com/test-org",
            personal_access_token="test-pat",
            members_team="foo/Maintainers",
            base_delay=0,
        )
    client._git_client = mock_git_client
    client._core_client = mock_core_client
    return client


@pytest.fixture
def repository():
    return RepositoryRef(owner="foo", name="bar")


def make_pr(number=2, status="completed", fork_owner=None, source="refs/heads/feature/x"):
    fork_source = None
    if fork_owner:
        fork_source = SimpleNamespace(repository=SimpleNamespace(project=SimpleNamespace(name=fork_owner)))
    return SimpleNamespace(
        pull_request_id=number,
        title="This is a fix for X",
        description="body",
        status=status,
        source_ref_name=source,
        target_ref_name="refs/heads/master",
        created_by=SimpleNamespace(unique_name="developer@contoso.com", id="id-dev", display_name="Dev"),
        fork_source=fork_source,
        last_merge_target_commit=SimpleNamespace(commit_id="base0001"),
        last_merge_commit=SimpleNamespace(commit_id="merge0001"),
        last_merge_source_commit=SimpleNamespace(commit_id="source0001"),
    )


class TestRenderFileDiff:
    def test_modified_file(self):
        assert render_file_diff("f.txt", "a\nb\n", "a\nc\n") == (
            "diff --git a/f.txt b/f.txt\n"
            "--- a/f.txt\n"
            "+++ b/f.txt\n"
            "@@ -1,2 +1,2 @@\n"
            " a\n"
            "-b\n"
            "+c\n"
        )

    def test_added_file(self):
        assert render_file_diff("f.txt", None, "x\n") == (
            "diff --git a/f.txt b/f.txt\n"
            "new file mode 100644\n"
            "--- /dev/null\n"
            "+++ b/f.txt\n"
            "@@ -0,0 +1 @@\n"
            "+x\n"
        )

    def test_deleted_file(self):
        diff = render_file_diff("f.txt", "x\n", None)

        assert "deleted file mode 100644\n" in diff
        assert "+++ /dev/null\n" in diff
        assert diff.endswith("-x\n")

    def test_missing_trailing_newline(self):
        assert render_file_diff("f.txt", "a", "b") == (
            "diff --git a/f.txt b/f.txt\n"
            "--- a/f.txt\n"
            "+++ b/f.txt\n"
            "@@ -1 +1 @@\n"
            "-a\n"
            "\\ No newline at end of file\n"
            "+b\n"
            "\\ No newline at end of file\n"
        )

    def test_unchanged_file(self):
        assert render_file_diff("f.txt", "same\n", "same\n") == ""


class TestGetChange:
    @pytest.mark.asyncio
    async def test_completed_pull_request_is_merged(self, review_client, mock_git_client, repository):
        mock_git_client.get_pull_request.return_value = make_pr()

        change = await review_client.get_change(repository, 2)

        assert change.number == 2
        assert change.base_branch == "master"
        assert change.state == ChangeState.CLOSED
        assert change.merged is True
        assert change.author.login == "developer@contoso.com"
        mock_git_client.get_pull_request.assert_called_once_with(
            repository_id="bar", pull_request_id=2, project="foo"
        )

    @pytest.mark.asyncio
    async def test_active_pull_request_is_open(self, review_client, mock_git_client, repository):
        mock_git_client.get_pull_request.return_value = make_pr(status="active")

        change = await review_client.get_change(repository, 2)

        assert change.state == ChangeState.OPEN
        assert change.merged is False


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, review_client, mock_git_client, repository):
        mock_git_client.get_pull_request.side_effect = [Exception("connection reset"), make_pr()]

        change = await review_client.get_change(repository, 2)

        assert change.number == 2
        assert mock_git_client.get_pull_request.call_count == 2

    @pytest.mark.asyncio
    async def test_retries_are_exhausted(self, review_client, mock_git_client, repository):
        mock_git_client.get_pull_request.side_effect = Exception("connection reset")

        with pytest.raises(TransientError):
            await review_client.get_change(repository, 2)
        assert mock_git_client.get_pull_request.call_count == 3

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self, review_client, mock_git_client, repository):
        mock_git_client.get_pull_request.side_effect = Exception("TF401180: pull request not found")

        with pytest.raises(PermanentError):
            await review_client.get_change(repository, 2)
        assert mock_git_client.get_pull_request.call_count == 1

    @pytest.mark.asyncio
    async def test_writes_are_attempted_once(self, review_client, mock_git_client, repository):
        mock_git_client.create_thread.side_effect = Exception("connection reset")

        with pytest.raises(TransientError):
            await review_client.create_comment(repository, 2, "hello")
        assert mock_git_client.create_thread.call_count == 1

    @pytest.mark.asyncio
    async def test_permanent_failures_do_not_open_the_circuit(self, review_client, mock_git_client, repository):
        mock_git_client.get_pull_request.side_effect = Exception("TF401180: pull request not found")

        for _ in range(review_client.circuit_breaker.failure_threshold + 1):
            with pytest.raises(PermanentError):
                await review_client.get_change(repository, 2)

        assert review_client.circuit_breaker.state == CircuitState.CLOSED
        assert review_client.circuit_breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_transient_failures_count_against_the_circuit(self, review_client, mock_git_client, repository):
        mock_git_client.get_pull_request.side_effect = Exception("connection reset")

        with pytest.raises(TransientError):
            await review_client.get_change(repository, 2)

        assert review_client.circuit_breaker.failure_count == 3


class TestGetPatch:
    @pytest.mark.asyncio
    async def test_builds_diff_from_iteration_changes(self, review_client, mock_git_client, repository):
        mock_git_client.get_pull_request.return_value = make_pr()
        mock_git_client.get_pull_request_iterations.return_value = [SimpleNamespace(id=1), SimpleNamespace(id=2)]
        mock_git_client.get_pull_request_iteration_changes.return_value = SimpleNamespace(
            change_entries=[
                {"item": {"path": "/bar.go"}, "changeType": "edit"},
                {"item": {"path": "/logo.png"}, "changeType": "edit"},
                {"item": {"path": "/docs", "isFolder": True}, "changeType": "edit"},
                {"item": {"path": "/new.txt"}, "changeType": "add"},
            ]
        )
        contents = {
            ("/bar.go", "base0001"): b"return 42\n",
            ("/bar.go", "merge0001"): b"return 49\n",
            ("/new.txt", "merge0001"): b"hello\n",
        }

        def get_item_content(repository_id, path, project, version_descriptor):
            return iter([contents[(path, version_descriptor.version)]])

        mock_git_client.get_item_content.side_effect = get_item_content

        patch_bytes = await review_client.get_patch(repository, 2)

        expected = render_file_diff("bar.go", "return 42\n", "return 49\n") + render_file_diff(
            "new.txt", None, "hello\n"
        )
        assert patch_bytes == expected.encode("utf-8")
        assert b"logo.png" not in patch_bytes
        _, kwargs = mock_git_client.get_pull_request_iteration_changes.call_args
        assert kwargs["iteration_id"] == 2
        assert kwargs["compare_to"] == 0

    @pytest.mark.asyncio
    async def test_rename_becomes_delete_and_add(self, review_client, mock_git_client, repository):
        mock_git_client.get_pull_request.return_value = make_pr()
        mock_git_client.get_pull_request_iterations.return_value = [SimpleNamespace(id=1)]
        mock_git_client.get_pull_request_iteration_changes.return_value = SimpleNamespace(
            change_entries=[
                {"item": {"path": "/new.go"}, "changeType": "rename", "originalPath": "/old.go"},
            ]
        )
        mock_git_client.get_item_content.side_effect = lambda **kwargs: iter([b"package bar\n"])

        patch_bytes = await review_client.get_patch(repository, 2)

        assert patch_bytes.decode() == (
            render_file_diff("old.go", "package bar\n", None)
            + render_file_diff("new.go", None, "package bar\n")
        )

    @pytest.mark.asyncio
    async def test_non_utf8_content_is_rejected(self, review_client, mock_git_client, repository):
        mock_git_client.get_pull_request.return_value = make_pr()
        mock_git_client.get_pull_request_iterations.return_value = [SimpleNamespace(id=1)]
        mock_git_client.get_pull_request_iteration_changes.return_value = SimpleNamespace(
            change_entries=[{"item": {"path": "/data.bin2"}, "changeType": "edit"}]
        )
        mock_git_client.get_item_content.side_effect = lambda **kwargs: iter([b"\xff\xfe\x00"])

        with pytest.raises(PermanentError):
            await review_client.get_patch(repository, 2)

    @pytest.mark.asyncio
    async def test_missing_merge_commits(self, review_client, mock_git_client, repository):
        pr = make_pr()
        pr.last_merge_target_commit = None
        mock_git_client.get_pull_request.return_value = pr

        with pytest.raises(PermanentError):
            await review_client.get_patch(repository, 2)


class TestListOpenChanges:
    @pytest.mark.asyncio
    async def test_fork_heads_are_qualified(self, review_client, mock_git_client, repository):
        mock_git_client.get_pull_requests.return_value = [
            make_pr(number=7, status="active", fork_owner="ci-robot", source="refs/heads/cherry-pick-2-to-stage"),
            make_pr(number=8, status="active"),
        ]

        summaries = await review_client.list_open_changes(repository)

        assert [(s.number, s.head, s.base) for s in summaries] == [
            (7, "ci-robot:cherry-pick-2-to-stage", "master"),
            (8, "feature/x", "master"),
        ]
        _, kwargs = mock_git_client.get_pull_requests.call_args
        assert kwargs["search_criteria"].status == "active"


class TestCreateChange:
    @pytest.mark.asyncio
    async def test_fork_head_creates_cross_repository_pull_request(self, review_client, mock_git_client, repository):
        mock_git_client.get_repository.return_value = SimpleNamespace(id="fork-repo-id")
        mock_git_client.create_pull_request.return_value = SimpleNamespace(pull_request_id=3)

        number = await review_client.create_change(
            repository,
            title="[stage] This is a fix for X",
            body="This is an automated cherry-pick of #2",
            head="ci-robot:cherry-pick-2-to-stage",
            base="stage",
        )

        assert number == 3
        mock_git_client.get_repository.assert_called_once_with(repository_id="bar", project="ci-robot")
        args, kwargs = mock_git_client.create_pull_request.call_args
        pull_request = args[0]
        assert isinstance(pull_request, GitPullRequest)
        assert pull_request.source_ref_name == "refs/heads/cherry-pick-2-to-stage"
        assert pull_request.target_ref_name == "refs/heads/stage"
        assert pull_request.description == "This is an automated cherry-pick of #2"
        assert pull_request.fork_source.repository.id == "fork-repo-id"
        assert kwargs == {"repository_id": "bar", "project": "foo"}

    @pytest.mark.asyncio
    async def test_bare_head_creates_same_repository_pull_request(self, review_client, mock_git_client, repository):
        mock_git_client.create_pull_request.return_value = SimpleNamespace(pull_request_id=4)

        await review_client.create_change(repository, title="t", body="b", head="topic", base="stage")

        mock_git_client.get_repository.assert_not_called()
        pull_request = mock_git_client.create_pull_request.call_args[0][0]
        assert pull_request.fork_source is None

    @pytest.mark.asyncio
    async def test_active_duplicate_is_reported(self, review_client, mock_git_client, repository):
        mock_git_client.get_repository.return_value = SimpleNamespace(id="fork-repo-id")
        mock_git_client.create_pull_request.side_effect = Exception(
            "TF401179: An active pull request for the source and target branch already exists."
        )

        with pytest.raises(DuplicateChangeError):
            await review_client.create_change(
                repository, title="t", body="b", head="ci-robot:cherry-pick-2-to-stage", base="stage"
            )
        assert mock_git_client.create_pull_request.call_count == 1


class TestComments:
    @pytest.mark.asyncio
    async def test_create_comment_opens_thread(self, review_client, mock_git_client, repository):
        await review_client.create_comment(repository, 2, "@wiseguy: new pull request created: #3")

        args, kwargs = mock_git_client.create_thread.call_args
        assert args[0].comments[0].content == "@wiseguy: new pull request created: #3"
        assert kwargs["pull_request_id"] == 2

    @pytest.mark.asyncio
    async def test_list_comments_skips_system_and_deleted(self, review_client, mock_git_client, repository):
        def comment(content, when, comment_type="text", is_deleted=False):
            return SimpleNamespace(
                content=content,
                comment_type=comment_type,
                is_deleted=is_deleted,
                published_date=datetime(2024, 1, when, tzinfo=timezone.utc),
                author=SimpleNamespace(unique_name="approver", id="id-1", display_name="Approver"),
            )

        mock_git_client.get_threads.return_value = [
            SimpleNamespace(is_deleted=False, comments=[comment("/cherrypick release-1.6", 3)]),
            SimpleNamespace(is_deleted=True, comments=[comment("/cherrypick gone", 1)]),
            SimpleNamespace(
                is_deleted=False,
                comments=[
                    comment("Policy updated", 1, comment_type="system"),
                    comment("/cherrypick release-1.5", 2),
                    comment("removed", 2, is_deleted=True),
                ],
            ),
        ]

        comments = await review_client.list_comments(repository, 2)

        assert [c.body for c in comments] == ["/cherrypick release-1.5", "/cherrypick release-1.6"]
        assert comments[0].author.login == "approver"


class TestLabels:
    @pytest.mark.asyncio
    async def test_only_active_labels(self, review_client, mock_git_client, repository):
        mock_git_client.get_pull_request_labels.return_value = [
            SimpleNamespace(name="cherrypick/release-1.5", active=True),
            SimpleNamespace(name="cherrypick/old", active=False),
        ]

        assert await review_client.get_labels(repository, 2) == ["cherrypick/release-1.5"]

    @pytest.mark.asyncio
    async def test_add_label(self, review_client, mock_git_client, repository):
        await review_client.add_label(repository, 2, "cherrypick/stage")

        args, kwargs = mock_git_client.create_pull_request_label.call_args
        assert args[0].name == "cherrypick/stage"
        assert kwargs["pull_request_id"] == 2


class TestMembership:
    @pytest.mark.asyncio
    async def test_member_matched_case_insensitively(self, review_client, mock_core_client):
        mock_core_client.get_team_members_with_extended_properties.return_value = [
            SimpleNamespace(identity=SimpleNamespace(unique_name="Approver@contoso.com", id="id-1", display_name="A")),
        ]

        assert await review_client.is_org_member(Identity(login="approver@contoso.com"))
        assert not await review_client.is_org_member(Identity(login="fan@example.com", id="id-fan"))
        mock_core_client.get_team_members_with_extended_properties.assert_called_with(
            project_id="foo", team_id="Maintainers"
        )

    @pytest.mark.asyncio
    async def test_member_matched_by_id(self, review_client, mock_core_client):
        mock_core_client.get_team_members_with_extended_properties.return_value = [
            SimpleNamespace(identity={"uniqueName": "someone-else", "id": "id-1"}),
        ]

        assert await review_client.is_org_member(Identity(login="renamed", id="id-1"))

    @pytest.mark.asyncio
    async def test_no_team_configured(self, review_client):
        review_client.members_team = None

        with pytest.raises(PermanentError):
            await review_client.is_org_member(Identity(login="approver"))


class TestAssign:
    @pytest.mark.asyncio
    async def test_adds_reviewer(self, review_client, mock_git_client, repository):
        await review_client.assign(repository, 3, [Identity(login="wiseguy", id="id-wise")])

        args, kwargs = mock_git_client.create_pull_request_reviewer.call_args
        assert args[0].id == "id-wise"
        assert kwargs["reviewer_id"] == "id-wise"
        assert kwargs["pull_request_id"] == 3

    @pytest.mark.asyncio
    async def test_identity_without_id(self, review_client, repository):
        with pytest.raises(PermanentError):
            await review_client.assign(repository, 3, [Identity(login="wiseguy")])

    @pytest.mark.asyncio
    async def test_reviewer_is_added_once(self, review_client, mock_git_client, repository):
        mock_git_client.create_pull_request_reviewer.side_effect = Exception("connection reset")

        with pytest.raises(TransientError):
            await review_client.assign(repository, 3, [Identity(login="wiseguy", id="id-wise")])
        assert mock_git_client.create_pull_request_reviewer.call_count == 1
