"""Tests for taskrelay/rendering/comments.py."""

import pytest
from jinja2 import TemplateNotFound, UndefinedError

from taskrelay.engine.classifier import WorkerMarkers, classify
from taskrelay.enums import DeployMode, WorkerStatus
from taskrelay.rendering.comments import CommentComposer


def test_missing_template_dir(tmp_path):
    with pytest.raises(ValueError, match="does not exist"):
        CommentComposer(template_dir=tmp_path / "nope")


def test_unknown_template(composer):
    with pytest.raises(TemplateNotFound):
        composer.render("nope.md.j2")


def test_strict_undefined(composer):
    with pytest.raises(UndefinedError):
        composer.render("implement.md.j2", model="opus")


def test_issue_title(composer):
    assert composer.issue_title("Add dark mode") == "Portal:Add dark mode"


def test_issue_body_with_portal_link(composer):
    body = composer.issue_body("Add dark mode", "Support a dark theme.", "https://portal.example.com/projects")

    assert body.startswith("## Add dark mode")
    assert "Support a dark theme." in body
    assert body.endswith("Created from the project portal: https://portal.example.com/projects")


def test_issue_body_without_description_or_link(composer):
    assert composer.issue_body("Add dark mode", None) == "## Add dark mode"


def test_plan_command(composer):
    body = composer.worker_command(DeployMode.PLAN, "sonnet", "Add dark mode", "Details", "PLN-abc123")

    assert body.splitlines()[0] == "@pts-worker /plan /model/sonnet"
    assert "**Task:** Add dark mode" in body
    assert body.endswith("Plan ID: PLN-abc123")


def test_execute_command(composer):
    body = composer.worker_command("execute", "haiku", "Add dark mode", None, "PLN-abc123")

    assert body.splitlines()[0] == "@pts-worker /model/haiku"
    assert "/plan" not in body


def test_implement_never_requests_plan(composer):
    body = composer.implement("opus", "Add dark mode")

    assert body.splitlines()[0] == "@pts-worker /model/opus"
    assert "/plan" not in body


def test_cancel(composer):
    assert composer.cancel() == "@pts-worker /cancel"


def test_plan_deploy(composer):
    body = composer.plan_deploy("opus", "1. Add a toggle", "docs/prds/002-add-dark-mode/README.md", "PLN-abc123")

    assert body.splitlines()[0] == "@pts-worker /model/opus"
    assert "## Implementation Plan\n\n1. Add a toggle" in body
    assert "## Documentation" in body
    assert "Save this implementation plan as `docs/prds/002-add-dark-mode/README.md`." in body
    assert "Create the parent directory if it doesn't exist." in body


def test_custom_markers_flow_into_commands():
    composer = CommentComposer(WorkerMarkers(bot_handle="@relay", cancel_directive="/stop"))

    assert composer.cancel() == "@relay /stop"
    assert composer.implement("sonnet", "T").startswith("@relay /model/sonnet")


def test_posted_commands_do_not_classify_as_bot_status(composer):
    """Our own comments must not look like worker progress."""
    command = composer.worker_command(DeployMode.PLAN, "sonnet", "Add dark mode", None, "PLN-abc123")

    assert classify(command) == WorkerStatus.UNKNOWN
    assert classify(composer.cancel()) == WorkerStatus.UNKNOWN
