"""Sandboxed Jinja2 rendering of issue bodies and worker command comments.

Every comment this package posts is rendered here from the templates under
``taskrelay/templates/comments``. Templates receive the ``WorkerMarkers``
value used by the classifier, so the handle and directives written into
commands are the same strings the classifier later looks for.

Templates:
    - issue_body.md.j2: Issue description composed from the task
    - worker_command.md.j2: Initial ``/plan`` or execute command
    - implement.md.j2: Continue / accept-plan command (never carries ``/plan``)
    - cancel.md.j2: Cancellation marker
    - plan_deploy.md.j2: Stored plan revision plus PRD instructions

Example:
    >>> composer = CommentComposer()
    >>> composer.cancel()
    '@pts-worker /cancel'
"""

from pathlib import Path
from typing import Any

from jinja2 import FileSystemLoader, StrictUndefined, TemplateNotFound
from jinja2.sandbox import SandboxedEnvironment

from taskrelay.engine.classifier import DEFAULT_MARKERS, WorkerMarkers
from taskrelay.enums import DeployMode


class CommentComposer:
    """Render tracker text from package templates.

    Attributes:
        markers: Marker contract shared with the classifier
        template_dir: Resolved template directory
        env: The SandboxedEnvironment instance
    """

    def __init__(self, markers: WorkerMarkers = DEFAULT_MARKERS, template_dir: Path | None = None) -> None:
        if template_dir is None:
            template_dir = Path(__file__).parent.parent / "templates" / "comments"

        self.template_dir = template_dir.resolve()
        if not self.template_dir.is_dir():
            raise ValueError(f"Template directory does not exist: {self.template_dir}")

        self.markers = markers
        self.env = SandboxedEnvironment(
            loader=FileSystemLoader(str(self.template_dir)),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render(self, template_name: str, **context: Any) -> str:
        """Render one template with the markers in scope.

        Raises:
            TemplateNotFound: If the template does not exist
            jinja2.UndefinedError: If a template variable is missing
        """
        try:
            template = self.env.get_template(template_name)
        except TemplateNotFound as e:
            raise TemplateNotFound(f"Template not found: {template_name}") from e
        return template.render(markers=self.markers, **context).strip()

    def issue_title(self, task_title: str) -> str:
        return f"Portal:{task_title}"

    def issue_body(self, task_title: str, task_description: str | None, portal_url: str = "") -> str:
        return self.render(
            "issue_body.md.j2",
            task_title=task_title,
            task_description=task_description or "",
            portal_url=portal_url,
        )

    def worker_command(
        self,
        mode: DeployMode,
        model: str,
        task_title: str,
        task_description: str | None,
        plan_id: str,
    ) -> str:
        """Initial command: ``@pts-worker /plan /model/<m>`` or ``@pts-worker /model/<m>``."""
        return self.render(
            "worker_command.md.j2",
            mode=DeployMode(mode).value,
            model=model,
            task_title=task_title,
            task_description=task_description or "",
            plan_id=plan_id,
        )

    def implement(self, model: str, task_title: str, custom_prompt: str | None = None) -> str:
        return self.render(
            "implement.md.j2",
            model=model,
            task_title=task_title,
            custom_prompt=custom_prompt or "",
        )

    def cancel(self) -> str:
        return self.render("cancel.md.j2")

    def plan_deploy(self, model: str, plan_content: str, prd_path: str, plan_id: str) -> str:
        return self.render(
            "plan_deploy.md.j2",
            model=model,
            plan_content=plan_content,
            prd_path=prd_path,
            plan_id=plan_id,
        )
