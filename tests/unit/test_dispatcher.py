"""Tests for taskrelay/engine/dispatcher.py."""

import re

import pytest

from taskrelay.enums import DeployMode, WorkerStatus
from taskrelay.exceptions import (
    ForbiddenError,
    NotFoundError,
    PartialDispatchError,
    UpstreamError,
    ValidationError,
)
from taskrelay.engine.dispatcher import next_prd_number, prd_path, slugify
from taskrelay.models.domain import DirectoryEntry


class TestPrdHelpers:
    """Tests for PRD path helpers."""

    def test_slugify(self):
        assert slugify("Add Dark Mode (v2)!") == "add-dark-mode-v2"

    def test_slugify_truncates(self):
        assert len(slugify("x" * 80)) == 50

    def test_next_prd_number_ignores_unnumbered(self):
        assert next_prd_number(["001-login", "007-billing", "drafts", "000-template"]) == 8

    def test_next_prd_number_empty(self):
        assert next_prd_number([]) == 1

    def test_prd_path(self):
        assert prd_path(3, "Add dark mode") == "docs/prds/003-add-dark-mode/README.md"


class TestStart:
    """Tests for Dispatcher.start."""

    @pytest.mark.asyncio
    async def test_plan_mode(self, dispatcher, tracker, deployment_store, task_store, activity_log, task, link, admin):
        result = await dispatcher.start(admin, task.id, link.id, "sonnet", "plan")

        issue = tracker.issues[result.issue_number]
        assert issue["title"] == "Portal:Add dark mode"
        assert "Support a dark color scheme" in issue["body"]
        assert "https://portal.example.com/projects" in issue["body"]

        [command] = tracker.posted_bodies(result.issue_number)
        assert command.startswith("@pts-worker /plan /model/sonnet")
        assert "**Task:** Add dark mode" in command

        deployment = await deployment_store.get(result.deployment_id)
        assert deployment.status == WorkerStatus.WORKING
        assert deployment.mode == DeployMode.PLAN
        assert deployment.command_posted is True
        assert re.fullmatch(r"PLN-[0-9a-z]{6}", deployment.plan_id)
        assert f"Plan ID: {deployment.plan_id}" in command
        assert result.worker_status == WorkerStatus.WORKING

        stored_task = await task_store.get_task(task.id)
        assert stored_task.issue_number == result.issue_number
        assert stored_task.worker_status == WorkerStatus.WORKING

        [event] = await activity_log.list_for_task(task.id)
        assert event.verb == "worker.plan_requested"
        assert event.metadata["deployment_id"] == deployment.id
        assert event.metadata["comment_posted"] is True

    @pytest.mark.asyncio
    async def test_execute_mode(self, dispatcher, tracker, deployment_store, activity_log, task, link, admin):
        result = await dispatcher.start(admin, task.id, link.id, "opus", "execute")

        [command] = tracker.posted_bodies(result.issue_number)
        assert command.startswith("@pts-worker /model/opus")
        assert "/plan" not in command
        assert (await deployment_store.get(result.deployment_id)).status == WorkerStatus.IMPLEMENTING

        [event] = await activity_log.list_for_task(task.id)
        assert event.verb == "worker.implement_requested"
        assert event.metadata["has_custom_prompt"] is False

    @pytest.mark.asyncio
    async def test_invalid_model_rejected_before_side_effects(self, dispatcher, tracker, task, link, admin):
        with pytest.raises(ValidationError) as exc_info:
            await dispatcher.start(admin, task.id, link.id, "gpt-5")

        assert exc_info.value.message == "Invalid payload."
        assert exc_info.value.errors[0]["loc"] == ["model"]
        assert tracker.issues == {}

    @pytest.mark.asyncio
    async def test_link_from_other_project(self, dispatcher, tracker, task, foreign_link, admin):
        with pytest.raises(ValidationError, match="does not belong"):
            await dispatcher.start(admin, task.id, foreign_link.id, "sonnet")
        assert tracker.issues == {}

    @pytest.mark.asyncio
    async def test_forbidden(self, dispatcher, tracker, task, link, outsider):
        with pytest.raises(ForbiddenError):
            await dispatcher.start(outsider, task.id, link.id, "sonnet")
        assert tracker.issues == {}

    @pytest.mark.asyncio
    async def test_missing_task(self, dispatcher, link, admin):
        with pytest.raises(NotFoundError):
            await dispatcher.start(admin, "missing", link.id, "sonnet")

    @pytest.mark.asyncio
    async def test_issue_failure_persists_nothing(self, dispatcher, tracker, deployment_store, task, link, admin):
        tracker.issue_error = UpstreamError("GitHub API error: create issue failed", status_code=500)

        with pytest.raises(UpstreamError):
            await dispatcher.start(admin, task.id, link.id, "sonnet")

        assert await deployment_store.list_for_task(task.id) == []

    @pytest.mark.asyncio
    async def test_partial_dispatch(self, dispatcher, tracker, deployment_store, activity_log, task, link, admin):
        tracker.comment_error = UpstreamError("GitHub API error: post comment failed", status_code=502)

        with pytest.raises(PartialDispatchError) as exc_info:
            await dispatcher.start(admin, task.id, link.id, "sonnet")

        error = exc_info.value
        assert error.status_code == 502
        assert f"Issue #{error.issue_number} was created" in error.message

        deployment = await deployment_store.get(error.deployment_id)
        assert deployment.command_posted is False
        assert len(tracker.issues) == 1

        [event] = await activity_log.list_for_task(task.id)
        assert event.metadata["comment_posted"] is False

    @pytest.mark.asyncio
    async def test_retry_command_reuses_issue(self, dispatcher, tracker, deployment_store, task, link, admin):
        tracker.comment_error = UpstreamError("GitHub API error: post comment failed", status_code=502)
        with pytest.raises(PartialDispatchError) as exc_info:
            await dispatcher.start(admin, task.id, link.id, "sonnet")

        result = await dispatcher.retry_command(admin, exc_info.value.deployment_id)

        assert len(tracker.issues) == 1
        assert result.issue_number == exc_info.value.issue_number
        assert len(tracker.posted_bodies(result.issue_number)) == 1
        assert (await deployment_store.get(result.deployment_id)).command_posted is True

    @pytest.mark.asyncio
    async def test_retry_command_when_already_posted(self, dispatcher, task, link, admin):
        result = await dispatcher.start(admin, task.id, link.id, "sonnet")

        with pytest.raises(ValidationError, match="already posted"):
            await dispatcher.retry_command(admin, result.deployment_id)


class TestContinueDeployment:
    """Tests for Dispatcher.continue_deployment."""

    @pytest.mark.asyncio
    async def test_continue(self, dispatcher, tracker, deployment_store, task_store, activity_log, task, link, admin):
        result = await dispatcher.start(admin, task.id, link.id, "sonnet")
        await deployment_store.update_status(result.deployment_id, WorkerStatus.PLAN_READY)

        comment = await dispatcher.continue_deployment(admin, result.deployment_id, "opus")

        bodies = tracker.posted_bodies(result.issue_number)
        assert comment.html_url.endswith(str(comment.id))
        assert bodies[-1].startswith("@pts-worker /model/opus")
        assert "/plan" not in bodies[-1]
        assert "Implement the approved plan for **Add dark mode**." in bodies[-1]
        assert (await deployment_store.get(result.deployment_id)).status == WorkerStatus.IMPLEMENTING
        assert (await task_store.get_task(task.id)).worker_status == WorkerStatus.IMPLEMENTING

        events = await activity_log.list_for_task(task.id)
        assert [e.verb for e in events] == ["worker.plan_requested", "worker.implement_requested"]
        assert events[-1].metadata["has_custom_prompt"] is False

    @pytest.mark.asyncio
    async def test_continue_with_custom_prompt(self, dispatcher, tracker, activity_log, task, link, admin):
        result = await dispatcher.start(admin, task.id, link.id, "sonnet")

        await dispatcher.continue_deployment(admin, result.deployment_id, "sonnet", "Skip step 3, keep tests.")

        body = tracker.posted_bodies(result.issue_number)[-1]
        assert "Skip step 3, keep tests." in body
        assert "Implement the approved plan" not in body
        assert (await activity_log.list_for_task(task.id))[-1].metadata["has_custom_prompt"] is True

    @pytest.mark.asyncio
    async def test_continue_final_deployment_rejected(self, dispatcher, tracker, deployment_store, task, link, admin):
        result = await dispatcher.start(admin, task.id, link.id, "sonnet")
        await deployment_store.update_status(result.deployment_id, WorkerStatus.PR_CREATED)

        with pytest.raises(ValidationError):
            await dispatcher.continue_deployment(admin, result.deployment_id, "opus")
        assert len(tracker.posted_bodies(result.issue_number)) == 1

    @pytest.mark.asyncio
    async def test_continue_comment_failure_keeps_status(self, dispatcher, tracker, deployment_store, task, link, admin):
        result = await dispatcher.start(admin, task.id, link.id, "sonnet")
        await deployment_store.update_status(result.deployment_id, WorkerStatus.PLAN_READY)
        tracker.comment_error = UpstreamError("GitHub API error: post comment failed", status_code=500)

        with pytest.raises(UpstreamError):
            await dispatcher.continue_deployment(admin, result.deployment_id, "opus")

        assert (await deployment_store.get(result.deployment_id)).status == WorkerStatus.PLAN_READY


class TestCancel:
    """Tests for Dispatcher.cancel."""

    @pytest.mark.asyncio
    async def test_cancel(self, dispatcher, tracker, deployment_store, task_store, activity_log, task, link, admin):
        result = await dispatcher.start(admin, task.id, link.id, "sonnet")

        await dispatcher.cancel(admin, result.deployment_id)

        assert tracker.posted_bodies(result.issue_number)[-1] == "@pts-worker /cancel"
        assert (await deployment_store.get(result.deployment_id)).status == WorkerStatus.CANCELLED
        assert (await task_store.get_task(task.id)).worker_status == WorkerStatus.CANCELLED
        event = (await activity_log.list_for_task(task.id))[-1]
        assert event.verb == "worker.cancelled"
        assert event.summary == f'Cancelled worker deployment for "Add dark mode" on acme/webapp#{result.issue_number}'

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [WorkerStatus.PLAN_READY, WorkerStatus.PR_CREATED, WorkerStatus.CANCELLED])
    async def test_cancel_rejected(self, dispatcher, tracker, deployment_store, task, link, admin, status):
        result = await dispatcher.start(admin, task.id, link.id, "sonnet")
        await deployment_store.update(result.deployment_id, status=status)

        with pytest.raises(ValidationError, match="cancellable"):
            await dispatcher.cancel(admin, result.deployment_id)
        assert len(tracker.posted_bodies(result.issue_number)) == 1

    @pytest.mark.asyncio
    async def test_cancel_forbidden(self, dispatcher, task, link, admin, outsider):
        result = await dispatcher.start(admin, task.id, link.id, "sonnet")
        with pytest.raises(ForbiddenError):
            await dispatcher.cancel(outsider, result.deployment_id)


class TestDeployPlan:
    """Tests for Dispatcher.deploy_plan."""

    @pytest.fixture
    async def thread(self, planning_store):
        session, _ = await planning_store.get_or_create_session("task-1", "link-1", "admin-1")
        thread = await planning_store.add_thread(session.id, "claude-sonnet-4.6", "Sonnet 4.6")
        await planning_store.append_revision(thread.id, 1, "## Clarifying Questions\n1. Which theme?")
        await planning_store.append_revision(thread.id, 2, "1. Add a theme context\n2. Add a toggle")
        return thread

    @pytest.mark.asyncio
    async def test_deploy_plan(self, dispatcher, tracker, deployment_store, activity_log, task, link, thread, admin):
        tracker.directories["docs/prds"] = [
            DirectoryEntry(name="001-login", path="docs/prds/001-login", type="dir"),
            DirectoryEntry(name="004-billing", path="docs/prds/004-billing", type="dir"),
            DirectoryEntry(name="099-notes.md", path="docs/prds/099-notes.md", type="file"),
        ]

        result = await dispatcher.deploy_plan(admin, thread.id, 2, task.id, link.id, "opus")

        [command] = tracker.posted_bodies(result.issue_number)
        assert command.startswith("@pts-worker /model/opus")
        assert "/plan" not in command
        assert "## Implementation Plan\n\n1. Add a theme context" in command
        assert "Save this implementation plan as `docs/prds/005-add-dark-mode/README.md`." in command

        deployment = await deployment_store.get(result.deployment_id)
        assert deployment.mode == DeployMode.EXECUTE
        assert deployment.status == WorkerStatus.IMPLEMENTING
        assert deployment.plan_thread_id == thread.id
        assert deployment.plan_version == 2
        assert deployment.prd_path == "docs/prds/005-add-dark-mode/README.md"

        [event] = await activity_log.list_for_task(task.id)
        assert event.verb == "worker.plan_requested"
        assert event.metadata["thread_id"] == thread.id
        assert event.metadata["version"] == 2

    @pytest.mark.asyncio
    async def test_prd_listing_failure_falls_back_to_one(self, dispatcher, tracker, task, link, thread, admin):
        tracker.directory_error = UpstreamError("GitHub API error: list directory failed", status_code=500)

        result = await dispatcher.deploy_plan(admin, thread.id, 2, task.id, link.id, "sonnet")

        assert "docs/prds/001-add-dark-mode/README.md" in tracker.posted_bodies(result.issue_number)[0]

    @pytest.mark.asyncio
    async def test_missing_revision(self, dispatcher, tracker, task, link, thread, admin):
        with pytest.raises(NotFoundError):
            await dispatcher.deploy_plan(admin, thread.id, 3, task.id, link.id, "sonnet")
        assert tracker.issues == {}

    @pytest.mark.asyncio
    async def test_retry_recomposes_plan_comment(self, dispatcher, tracker, task, link, thread, admin):
        tracker.comment_error = UpstreamError("GitHub API error: post comment failed", status_code=502)
        with pytest.raises(PartialDispatchError) as exc_info:
            await dispatcher.deploy_plan(admin, thread.id, 2, task.id, link.id, "sonnet")

        result = await dispatcher.retry_command(admin, exc_info.value.deployment_id)

        [command] = tracker.posted_bodies(result.issue_number)
        assert "docs/prds/001-add-dark-mode/README.md" in command
