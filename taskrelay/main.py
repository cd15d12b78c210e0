"""CLI entry point for task-relay."""

import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click
import structlog

from taskrelay.app import Relay
from taskrelay.config.settings import RelaySettings
from taskrelay.engine.poller import PollState
from taskrelay.engine.revision_nav import RevisionNavigator
from taskrelay.enums import DeployMode, WorkerModel
from taskrelay.exceptions import ConfigurationError, PartialDispatchError, TaskRelayError, ValidationError
from taskrelay.models.domain import PlanStreamEvent, RepositoryLink, Task, new_id
from taskrelay.utils.logging_config import bind_actor, clear_context, configure_logging

log = structlog.get_logger(__name__)

MODEL_CHOICES = click.Choice([m.value for m in WorkerModel])


@click.group()
@click.option(
    "--config",
    default="taskrelay.yaml",
    envvar="TASKRELAY_CONFIG",
    help="Path to configuration file",
)
@click.option("--log-level", default="WARNING", help="Logging level")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str) -> None:
    """task-relay: delegate tasks to an issue-tracker coding worker."""
    configure_logging(log_level, json_output=False)

    config_path = Path(config)
    if not config_path.exists():
        click.echo(f"Error: Configuration file not found: {config}", err=True)
        sys.exit(1)

    try:
        settings = RelaySettings.from_yaml(str(config_path))
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


def _run(ctx: click.Context, command: str, handler: Callable[[Relay], Awaitable[Any]]) -> None:
    """Build the relay, run one async handler, and map errors to exit codes."""

    async def _main() -> None:
        relay = Relay(ctx.obj["settings"])
        actor = relay.operator()
        bind_actor(actor.id, actor.role)
        try:
            await handler(relay)
        finally:
            await relay.close()
            clear_context()

    try:
        asyncio.run(_main())
    except PartialDispatchError as e:
        click.echo(f"Error: {e.message}", err=True)
        click.echo(f"Retry with: taskrelay retry --deployment {e.deployment_id}", err=True)
        sys.exit(1)
    except ValidationError as e:
        click.echo(f"Error: {e.message}", err=True)
        for error in e.errors:
            click.echo(f"  {'.'.join(str(p) for p in error['loc'])}: {error['msg']}", err=True)
        sys.exit(1)
    except TaskRelayError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{command}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)


@cli.command("register-task")
@click.option("--project", "project_id", required=True, help="Project the task belongs to")
@click.option("--title", required=True, help="Task title")
@click.option("--description", default=None, help="Task description")
@click.option("--client", "client_id", default=None, help="Client id")
@click.pass_context
def register_task(
    ctx: click.Context, project_id: str, title: str, description: str | None, client_id: str | None
) -> None:
    """Register a task the worker can be deployed against."""

    async def handler(relay: Relay) -> None:
        task = await relay.tasks.add_task(
            Task(id=new_id(), project_id=project_id, title=title, description=description, client_id=client_id)
        )
        click.echo(task.id)

    _run(ctx, "register_task", handler)


@cli.command("link-repo")
@click.option("--project", "project_id", required=True, help="Project to link")
@click.option("--repo", required=True, help="Repository as owner/name")
@click.option("--branch", default="main", help="Default branch")
@click.pass_context
def link_repo(ctx: click.Context, project_id: str, repo: str, branch: str) -> None:
    """Attach a repository to a project."""
    owner, _, name = repo.partition("/")
    if not owner or not name:
        click.echo("Error: --repo must be owner/name", err=True)
        sys.exit(1)

    async def handler(relay: Relay) -> None:
        link = await relay.tasks.add_link(
            RepositoryLink(id=new_id(), project_id=project_id, owner=owner, name=name, default_branch=branch)
        )
        click.echo(link.id)

    _run(ctx, "link_repo", handler)


@cli.command()
@click.option("--task", "task_id", required=True, help="Task id")
@click.option("--repo-link", "link_id", required=True, help="Repository link id")
@click.option("--model", type=MODEL_CHOICES, default=WorkerModel.SONNET.value, help="Worker model")
@click.option(
    "--mode",
    type=click.Choice([m.value for m in DeployMode]),
    default=DeployMode.PLAN.value,
    help="Ask for a plan first, or implement directly",
)
@click.pass_context
def deploy(ctx: click.Context, task_id: str, link_id: str, model: str, mode: str) -> None:
    """Open an issue for a task and dispatch the worker."""

    async def handler(relay: Relay) -> None:
        result = await relay.dispatcher.start(relay.operator(), task_id, link_id, model, mode)
        click.echo(f"Deployment: {result.deployment_id}")
        click.echo(f"Issue:      #{result.issue_number} {result.issue_url}")
        click.echo(f"Status:     {result.worker_status}")

    _run(ctx, "deploy", handler)


@cli.command("continue")
@click.option("--deployment", "deployment_id", required=True, help="Deployment id")
@click.option("--model", type=MODEL_CHOICES, default=WorkerModel.SONNET.value, help="Worker model")
@click.option("--prompt", "custom_prompt", default=None, help="Custom instructions for the worker")
@click.pass_context
def continue_(ctx: click.Context, deployment_id: str, model: str, custom_prompt: str | None) -> None:
    """Accept the plan and ask the worker to implement it."""

    async def handler(relay: Relay) -> None:
        comment = await relay.dispatcher.continue_deployment(relay.operator(), deployment_id, model, custom_prompt)
        click.echo(f"Posted: {comment.html_url}")

    _run(ctx, "continue", handler)


@cli.command()
@click.option("--deployment", "deployment_id", required=True, help="Deployment id")
@click.pass_context
def cancel(ctx: click.Context, deployment_id: str) -> None:
    """Ask the worker to stop a deployment."""

    async def handler(relay: Relay) -> None:
        comment = await relay.dispatcher.cancel(relay.operator(), deployment_id)
        click.echo(f"Cancellation requested: {comment.html_url}")

    _run(ctx, "cancel", handler)


@cli.command()
@click.option("--deployment", "deployment_id", required=True, help="Deployment id")
@click.pass_context
def retry(ctx: click.Context, deployment_id: str) -> None:
    """Re-post the worker command of a partially dispatched deployment."""

    async def handler(relay: Relay) -> None:
        result = await relay.dispatcher.retry_command(relay.operator(), deployment_id)
        click.echo(f"Posted: {result.comment_url}")

    _run(ctx, "retry", handler)


@cli.command()
@click.option("--deployment", "deployment_id", required=True, help="Deployment id")
@click.option("--comments", "show_comments", is_flag=True, help="Print worker comments")
@click.pass_context
def status(ctx: click.Context, deployment_id: str, show_comments: bool) -> None:
    """Refresh a deployment from its issue once."""

    async def handler(relay: Relay) -> None:
        result = await relay.resolver.resolve(relay.operator(), deployment_id)
        click.echo(f"Status: {result.deployment_status}")
        if result.pr_url:
            click.echo(f"PR:     {result.pr_url}")
        if result.awaiting_worker:
            click.echo("Waiting for the worker to respond")
        if show_comments:
            for comment in result.comments:
                click.echo(f"\n[{comment.created_at.isoformat()}] {comment.status}")
                click.echo(comment.body)

    _run(ctx, "status", handler)


def _echo_poll_state(state: PollState) -> None:
    if state.warning:
        click.echo(f"Warning: {state.warning}", err=True)
    if state.result is not None:
        line = f"{state.deployment_id}: {state.result.deployment_status}"
        if state.result.pr_url:
            line += f" {state.result.pr_url}"
        click.echo(line)


@cli.command()
@click.option("--deployment", "deployment_id", default=None, help="Deployment id")
@click.option("--task", "task_id", default=None, help="Watch the task's active deployment")
@click.option("--expand", multiple=True, help="Also poll these deployment ids (with --task)")
@click.option("--interval", type=float, default=None, help="Override polling interval in seconds")
@click.pass_context
def watch(
    ctx: click.Context,
    deployment_id: str | None,
    task_id: str | None,
    expand: tuple[str, ...],
    interval: float | None,
) -> None:
    """Poll until the worker reaches a stopping status."""
    if (deployment_id is None) == (task_id is None):
        click.echo("Error: pass exactly one of --deployment or --task", err=True)
        sys.exit(1)

    async def handler(relay: Relay) -> None:
        if interval is not None:
            relay.poller.interval = interval
        actor = relay.operator()
        if deployment_id is not None:
            state = await relay.poller.watch(actor, deployment_id, on_update=_echo_poll_state)
            if state.last_error and state.stopped_reason != "terminal":
                click.echo(f"Stopped: {state.last_error}", err=True)
            return

        states = await relay.poller.poll_task(actor, task_id, expanded=expand, on_update=_echo_poll_state)
        for polled_id in states:
            if relay.poller.is_polling(polled_id):
                await relay.poller.wait(polled_id)

    _run(ctx, "watch", handler)


@cli.command()
@click.option("--task", "task_id", required=True, help="Task id")
@click.option("--repo-link", "link_id", required=True, help="Repository link id")
@click.option("--thread", "thread_id", default=None, help="Thread id (defaults to the session's first thread)")
@click.option("--feedback", default=None, help="Feedback or answers for the next revision")
@click.pass_context
def plan(ctx: click.Context, task_id: str, link_id: str, thread_id: str | None, feedback: str | None) -> None:
    """Generate the next plan revision and stream it to stdout."""

    def on_event(event: PlanStreamEvent) -> None:
        if event.type == "text-delta" and event.text:
            click.echo(event.text, nl=False)
        elif event.type in ("tool-call-start", "tool-call-resolved") and event.label:
            click.echo(f"[{event.label}]", err=True)

    async def handler(relay: Relay) -> None:
        actor = relay.operator()
        data = await relay.planning.get_or_create_session(actor, task_id, link_id)
        thread = next((t for t in data.threads if t.id == thread_id), None) if thread_id else data.threads[0]
        if thread is None:
            raise ValidationError(f"Thread {thread_id} is not part of this task's planning session.")

        controller = relay.stream_controller()
        try:
            state, revision = await relay.planning.generate_revision(actor, controller, thread.id, feedback, on_event)
        finally:
            await controller.cancel()

        click.echo("")
        if revision is not None:
            click.echo(f"Saved {thread.model_label} revision v{revision.version} ({state.content_type.value})")
        elif state.error:
            raise TaskRelayError(f"Generation failed: {state.error}")
        else:
            click.echo("Generation did not complete; nothing was saved.", err=True)

    _run(ctx, "plan", handler)


@cli.command()
@click.option("--thread", "thread_id", required=True, help="Thread id")
@click.option("--version", type=int, default=None, help="Print this version's content")
@click.pass_context
def revisions(ctx: click.Context, thread_id: str, version: int | None) -> None:
    """List a thread's revisions with labels and deploy status."""

    async def handler(relay: Relay) -> None:
        revision_list = await relay.planning.fetch_revisions(relay.operator(), thread_id)
        navigator = RevisionNavigator(
            thread_id,
            revision_list,
            await relay.deployments.list_for_thread(thread_id),
            relay.markers,
        )
        for meta in navigator.version_meta():
            click.echo(f"{meta.version:>3}  {meta.label:<4} {meta.deploy_status.value}")

        if version is not None:
            navigator.navigate_to(version)
            current = navigator.current_revision
            if current is not None:
                click.echo(f"\n--- {navigator.current_label} ---")
                click.echo(current.content)

    _run(ctx, "revisions", handler)


if __name__ == "__main__":
    cli()
