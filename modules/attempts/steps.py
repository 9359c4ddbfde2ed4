from datetime import datetime, timedelta
from typing import Any, Dict

from core.exceptions import ConfigurationError, ExtractionFailure
from core.notes import append_note
from modules.attempts.models import WorkAttempt
from modules.hosts.models import Host
from modules.hosts.steps import host_target
from modules.scripts.tasks import (
    CreateUserScript,
    DeleteWorkspaceScript,
    FindFreePortScript,
    SetDockerComposeScript,
    SetSshAccessScript,
    StartDockerComposeScript,
)
from modules.workflow.definitions import StepDefinition
from modules.workflow.steps import ScriptStep, StepContext
from utils.output_extractor import (
    PORT_MARKER,
    extract_published_port,
    parse_container_listing,
    primary_container,
    require_json_payload,
)
from utils.script_engine import ExecutionResult
from utils.script_renderer import fill_compose_yaml

FINAL_ATTEMPT_STATUSES = ("completed", "terminated", "failed")


class WorkspaceStep(ScriptStep):
    entity_model = WorkAttempt

    def host_for(self, attempt: WorkAttempt) -> Host:
        task = attempt.task
        if task is None or task.host is None:
            raise ConfigurationError(f"No server assigned to task of attempt {attempt.id}")
        return task.host

    def script_run(self, ctx: StepContext, attempt: WorkAttempt, task: Any, **kwargs):
        host = self.host_for(attempt)
        return super().script_run(
            ctx, attempt, task,
            target=host_target(host),
            host=host,
            attempt=attempt,
            metadata={"attempt_id": str(attempt.id), "host_id": str(host.id)},
        )

    def run_script(self, ctx: StepContext, attempt: WorkAttempt, task: Any) -> ExecutionResult:
        with self.script_run(ctx, attempt, task) as result:
            return result


class CreateUserStep(WorkspaceStep):
    definition = StepDefinition(
        id="creating_user",
        label="Creating User",
        description="Creating workspace user on the server",
        icon="user",
        estimated_duration=5,
    )
    failure_message = "Failed to create user"

    def execute(self, ctx: StepContext, attempt: WorkAttempt) -> None:
        meta = ctx.metadata(attempt)
        username = meta.get("username")
        self.run_script(ctx, attempt, CreateUserScript(
            name=f"Create User {username}",
            username=username,
            password=meta.get("password"),
            workspace_path=meta.get("workspace_path"),
        ))


class FindFreePortStep(WorkspaceStep):
    definition = StepDefinition(
        id="finding_free_port",
        label="Finding Free Port",
        description="Finding free port for SSH",
        icon="port",
        estimated_duration=8,
    )
    failure_message = "Failed to find free port"

    def execute(self, ctx: StepContext, attempt: WorkAttempt) -> None:
        meta = ctx.metadata(attempt)
        task = FindFreePortScript(
            name=f"Find Free Port {attempt.id}",
            workspace_path=meta.get("workspace_path"),
        )
        with self.script_run(ctx, attempt, task) as result:
            payload = require_json_payload(result.output, PORT_MARKER, "ssh_port")
            try:
                port = int(payload["ssh_port"])
            except (TypeError, ValueError):
                raise ExtractionFailure(f"Invalid ssh_port returned: {payload['ssh_port']!r}")

        meta.set("ssh_port", port)


class SetDockerComposeStep(WorkspaceStep):
    definition = StepDefinition(
        id="setting_docker_compose",
        label="Setting Docker Compose Configuration",
        description="Setting docker-compose.yaml for workspace",
        icon="code",
        estimated_duration=9,
    )
    failure_message = "Failed to set docker compose"

    def placeholder_values(self, attempt: WorkAttempt, metadata: Dict[str, Any]) -> Dict[str, Any]:
        values = {
            key: value for key, value in metadata.items()
            if isinstance(value, (str, int, float)) and not isinstance(value, bool)
        }
        values["attempt_id"] = str(attempt.id)
        return values

    def execute(self, ctx: StepContext, attempt: WorkAttempt) -> None:
        meta = ctx.metadata(attempt)
        task = attempt.task
        compose_yaml = fill_compose_yaml(
            task.docker_compose_yaml or "",
            self.placeholder_values(attempt, meta.get_all()),
        )
        self.run_script(ctx, attempt, SetDockerComposeScript(
            name=f"Set Docker Compose {attempt.id}",
            workspace_path=meta.get("workspace_path"),
            docker_compose_yaml=compose_yaml,
            pre_script=task.pre_script or "",
            post_script=task.post_script or "",
        ))


class StartDockerComposeStep(WorkspaceStep):
    definition = StepDefinition(
        id="starting_docker_compose",
        label="Starting Docker Compose",
        description="Starting docker-compose.yaml for workspace",
        icon="docker",
        estimated_duration=9,
    )
    failure_message = "Failed to start docker compose"

    def execute(self, ctx: StepContext, attempt: WorkAttempt) -> None:
        meta = ctx.metadata(attempt)
        task = StartDockerComposeScript(
            name=f"Start Docker Compose {attempt.id}",
            workspace_path=meta.get("workspace_path"),
            timer=attempt.task.timer or 0,
        )
        with self.script_run(ctx, attempt, task) as result:
            containers = parse_container_listing(result.output)
            primary = primary_container(containers)
            if primary is None:
                raise ExtractionFailure("No container info returned")

        self.update_entity(
            ctx, attempt,
            container_id=primary.get("ID"),
            container_name=primary.get("Name"),
            container_port=extract_published_port(primary),
        )
        meta.merge({
            "containers": containers,
            "primary_container": primary,
            "primary_container_name": primary.get("Name"),
        })


class SetSshAccessStep(WorkspaceStep):
    definition = StepDefinition(
        id="setting_ssh_access",
        label="Setting SSH Access",
        description="Setting SSH access to container",
        icon="key",
        estimated_duration=9,
    )
    failure_message = "Failed to set SSH access"

    def execute(self, ctx: StepContext, attempt: WorkAttempt) -> None:
        meta = ctx.metadata(attempt)
        self.run_script(ctx, attempt, SetSshAccessScript(
            name=f"Set SSH Access {attempt.id}",
            workspace_path=meta.get("workspace_path"),
            container_name=meta.get("primary_container_name"),
        ))


class FinalizeWorkspaceStep(WorkspaceStep):
    definition = StepDefinition(
        id="finalizing_workspace",
        label="Finalizing Workspace",
        description="Finalizing workspace setup",
        icon="check",
        estimated_duration=5,
    )
    failure_message = "Failed to finalize workspace"

    def execute(self, ctx: StepContext, attempt: WorkAttempt) -> None:
        started_at = datetime.utcnow()
        if attempt.status == "pending":
            self.update_entity(ctx, attempt, status="running", started_at=started_at)

        timer = attempt.task.timer or 0
        if timer > 0:
            ctx.metadata(attempt).set(
                "expires_at", (started_at + timedelta(minutes=timer)).isoformat()
            )


class DeleteWorkspaceStep(WorkspaceStep):
    definition = StepDefinition(
        id="deleting_workspace",
        label="Deleting Workspace",
        description="Deleting workspace and user",
        icon="trash",
        estimated_duration=5,
    )
    failure_message = "Failed to delete workspace"

    def execute(self, ctx: StepContext, attempt: WorkAttempt) -> None:
        meta = ctx.metadata(attempt)
        self.run_script(ctx, attempt, DeleteWorkspaceScript(
            name=f"Delete Workspace {attempt.id}",
            username=meta.get("username"),
            workspace_path=meta.get("workspace_path"),
            container_name=attempt.container_name,
            allow_ssh=bool(attempt.task.allow_ssh),
        ))
        if attempt.status not in FINAL_ATTEMPT_STATUSES:
            self.update_entity(ctx, attempt, status="completed", completed_at=datetime.utcnow())


CLOSE_WORKFLOW = "workspace_close"


class CloseAttemptStep(WorkspaceStep):
    """First step of the chain fired when an attempt's task timer runs out."""

    definition = StepDefinition(
        id="closing_attempt",
        label="Closing Attempt",
        description="Closing attempt after its timer expired",
        icon="clock",
        estimated_duration=1,
    )
    failure_message = "Failed to close attempt"

    def handle(self, ctx: StepContext):
        attempt = self.load_entity(ctx)
        steps = [CloseAttemptStep]
        if attempt.task is not None and attempt.task.sandbox:
            steps.append(DeleteWorkspaceStep)
        ctx.tracker.initialize(attempt, steps, CLOSE_WORKFLOW, "Workspace Close")
        return super().handle(ctx)

    def execute(self, ctx: StepContext, attempt: WorkAttempt) -> None:
        if attempt.status in FINAL_ATTEMPT_STATUSES:
            return
        self.update_entity(ctx, attempt, status="terminated", completed_at=datetime.utcnow())
        append_note(ctx.db, attempt, "Attempt closed by timeout")
