"""
Shared fixtures: environment for settings, and in-memory review client and
working copy fakes used by the core tests.
"""

import asyncio
import os
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import pytest

os.environ.setdefault("AZURE_DEVOPS_PAT", "test_pat")
os.environ.setdefault("AZURE_DEVOPS_ORG", "test_org")
os.environ.setdefault("WEBHOOK_SECRET", "test_secret")
os.environ.setdefault("BOT_NAME", "ci-robot")
os.environ.setdefault("FORK_REPOS", '["ci-robot/bar"]')
os.environ.setdefault("WORKING_COPY_DIR", "/tmp/cherrypicker-tests")

from cherrypicker.models.cherry_pick import NewChangeRequest  # noqa: E402
from cherrypicker.models.events import (  # noqa: E402
    ChangeState,
    ChangeSummary,
    Identity,
    IssueComment,
    RepositoryRef,
    SourceChange,
)
from cherrypicker.services.branch_builder import PatchConflictError, WorkingCopyError  # noqa: E402

PATCH = b"""From af468c9e69dfdf39db591f1e3e8de5b64b0e62a2 Mon Sep 17 00:00:00 2001
From: Wise Guy <wise@guy.com>
Date: Thu, 19 Oct 2017 15:14:36 +0200
Subject: [PATCH] Update magic number

---
 bar.go | 3 ++-
 1 file changed, 2 insertions(+), 1 deletion(-)

diff --git a/bar.go b/bar.go
index 1ea52dc..5bd70a9 100644
--- a/bar.go
+++ b/bar.go
@@ -3,5 +3,6 @@ package bar

 // Foo does a thing.
 func Foo(wow int) int {
-\treturn 42 + wow
+\t// Needs to be 49 because of a reason.
+\treturn 49 + wow
 }
"""

BODY = "This PR updates the magic number.\n\n```release-note\nUpdate the magic number from 42 to 49\n```"


class FakeReviewClient:
    """In-memory review API recording every write."""

    def __init__(
        self,
        patch: bytes = PATCH,
        open_changes: Optional[List[ChangeSummary]] = None,
        comments: Optional[List[IssueComment]] = None,
        labels: Optional[List[str]] = None,
        members: Optional[List[str]] = None,
        created_number: int = 3,
    ):
        self.patch = patch
        self.open_changes = list(open_changes or [])
        self.comments = list(comments or [])
        self.labels = list(labels or [])
        self.members = set(members or [])
        self.next_number = created_number

        self.created: List[NewChangeRequest] = []
        self.posted: List[tuple] = []
        self.assigned: List[tuple] = []
        self.labels_added: List[tuple] = []
        self.membership_lookups: List[str] = []
        self.failures: Dict[str, Exception] = {}

    def _check(self, name: str) -> None:
        if name in self.failures:
            raise self.failures[name]

    async def get_change(self, repository, number):
        self._check("get_change")
        raise NotImplementedError

    async def get_patch(self, repository, number):
        self._check("get_patch")
        return self.patch

    async def list_open_changes(self, repository):
        self._check("list_open_changes")
        return list(self.open_changes)

    async def create_change(self, repository, title, body, head, base):
        self._check("create_change")
        self.created.append(NewChangeRequest(title=title, body=body, head=head, base=base))
        number = self.next_number
        self.next_number += 1
        return number

    async def create_comment(self, repository, number, text):
        self._check("create_comment")
        self.posted.append((f"{repository.full_name}#{number}", text))

    async def list_comments(self, repository, number):
        self._check("list_comments")
        return list(self.comments)

    async def get_labels(self, repository, number):
        self._check("get_labels")
        return list(self.labels)

    async def add_label(self, repository, number, label):
        self._check("add_label")
        self.labels_added.append((number, label))

    async def is_org_member(self, user):
        self.membership_lookups.append(user.login)
        self._check("is_org_member")
        return user.login in self.members

    async def assign(self, repository, number, users):
        self._check("assign")
        self.assigned.append((number, [user.login for user in users]))


class FakeWorkingCopy:
    def __init__(self, provider: "FakeWorkingCopyProvider"):
        self.provider = provider
        self.base: Optional[str] = None

    def checkout_new_branch(self, base, name):
        if base not in self.provider.branches:
            raise WorkingCopyError(f"cannot check out {name} from {base}: invalid reference: origin/{base}")
        self.base = base
        self.provider.checkouts.append((base, name))

    def apply_patch(self, patch, message):
        if self.base in self.provider.conflicting:
            raise PatchConflictError("error: patch failed: bar.go:3\nerror: bar.go: patch does not apply")
        self.provider.commits.append((self.base, message))

    def push(self, branch):
        if branch in self.provider.push_failures:
            raise WorkingCopyError(f"cannot push {branch}: connection reset")
        self.provider.pushed.append(branch)


class FakeWorkingCopyProvider:
    """Working copy double that tracks how many holders a repository has at once."""

    def __init__(self, branches=(), conflicting=(), push_failures=(), fork=True):
        self.branches = set(branches)
        self.conflicting = set(conflicting)
        self.push_failures = set(push_failures)
        self.fork = fork

        self.checkouts: List[tuple] = []
        self.commits: List[tuple] = []
        self.pushed: List[str] = []
        self.max_holders: Dict[str, int] = {}
        self._holders: Dict[str, int] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def has_fork(self, repository):
        return self.fork

    @asynccontextmanager
    async def acquire(self, repository):
        key = repository.full_name
        async with self._locks.setdefault(key, asyncio.Lock()):
            self._holders[key] = self._holders.get(key, 0) + 1
            self.max_holders[key] = max(self.max_holders.get(key, 0), self._holders[key])
            try:
                await asyncio.sleep(0)
                yield FakeWorkingCopy(self)
            finally:
                self._holders[key] -= 1


def identity(login: str) -> Identity:
    return Identity(login=login, id=f"id-{login}")


def comment(login: str, body: str) -> IssueComment:
    return IssueComment(author=identity(login), body=body)


@pytest.fixture
def repository() -> RepositoryRef:
    return RepositoryRef(owner="foo", name="bar")


@pytest.fixture
def merged_change() -> SourceChange:
    return SourceChange(
        number=2,
        title="This is a fix for X",
        body=BODY,
        base_branch="master",
        state=ChangeState.CLOSED,
        merged=True,
        author=identity("developer"),
    )
