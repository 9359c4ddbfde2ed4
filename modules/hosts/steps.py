from datetime import datetime
from typing import Any, Dict

from config.settings import settings
from modules.hosts.models import Host
from modules.scripts.tasks import (
    InstallDockerScript,
    InstallPackagesScript,
    InstallTraefikScript,
    StartProvisionScript,
    UpdateFirewallScript,
    UpdatePackagesScript,
)
from modules.workflow.definitions import StepDefinition
from modules.workflow.steps import ScriptStep, StepContext
from utils.encryption import encryption_manager
from utils.script_engine import ExecutionResult, RemoteTarget


def host_target(host: Host) -> RemoteTarget:
    return RemoteTarget(
        host=host.ip_address,
        username=host.ssh_username,
        password=encryption_manager.decrypt_data(host.ssh_password),
        port=host.ssh_port or 22,
    )


class HostStep(ScriptStep):
    entity_model = Host

    def run_script(self, ctx: StepContext, host: Host, task: Any) -> ExecutionResult:
        with self.script_run(
            ctx, host, task,
            target=host_target(host),
            host=host,
            metadata={"host_id": str(host.id)},
        ) as result:
            return result


class StartProvisioningStep(HostStep):
    definition = StepDefinition(
        id="starting_provision",
        label="Starting Provision",
        description="Starting server provision",
        icon="server",
        estimated_duration=9,
    )
    failure_message = "Failed to start provisioning"

    def execute(self, ctx: StepContext, host: Host) -> None:
        self.update_entity(ctx, host, status="provisioning")
        self.run_script(ctx, host, StartProvisionScript(
            name=f"Start Provisioning {host.ip_address}",
            host_name=host.name,
        ))


class UpdatePackagesStep(HostStep):
    definition = StepDefinition(
        id="updating_packages",
        label="Updating Packages",
        description="Updating server packages",
        icon="package",
        estimated_duration=20,
    )
    failure_message = "Failed to update server packages"

    def execute(self, ctx: StepContext, host: Host) -> None:
        self.run_script(ctx, host, UpdatePackagesScript(name=f"Update Server Packages {host.ip_address}"))


class InstallPackagesStep(HostStep):
    definition = StepDefinition(
        id="installing_packages",
        label="Installing Packages",
        description="Installing necessary packages",
        icon="package",
        estimated_duration=10,
    )
    failure_message = "Failed to install packages"

    def execute(self, ctx: StepContext, host: Host) -> None:
        self.run_script(ctx, host, InstallPackagesScript(name=f"Install Packages {host.ip_address}"))


class InstallDockerStep(HostStep):
    definition = StepDefinition(
        id="installing_docker",
        label="Installing Docker",
        description="Installing docker",
        icon="docker",
        estimated_duration=5,
    )
    timeout = settings.LONG_STEP_TIMEOUT
    failure_message = "Failed to install docker"

    def execute(self, ctx: StepContext, host: Host) -> None:
        self.run_script(ctx, host, InstallDockerScript(name=f"Install Docker {host.ip_address}"))


class UpdateFirewallStep(HostStep):
    definition = StepDefinition(
        id="updating_firewall",
        label="Updating Firewall",
        description="Updating server firewall",
        icon="firewall",
        estimated_duration=5,
    )
    failure_message = "Failed to update server firewall"

    def execute(self, ctx: StepContext, host: Host) -> None:
        self.run_script(ctx, host, UpdateFirewallScript(name=f"Update Firewall {host.ip_address}"))


class InstallTraefikStep(HostStep):
    definition = StepDefinition(
        id="installing_traefik",
        label="Installing Traefik",
        description="Installing and setting up traefik",
        icon="traefik",
        estimated_duration=5,
    )
    timeout = settings.LONG_STEP_TIMEOUT
    failure_message = "Failed to install traefik"

    def __init__(self, entity_id, cloudflare: Dict[str, str]):
        super().__init__(entity_id)
        self.cloudflare = cloudflare

    def execute(self, ctx: StepContext, host: Host) -> None:
        self.run_script(ctx, host, InstallTraefikScript(
            name=f"Install Traefik {host.ip_address}",
            **self.cloudflare,
        ))
        provisioned_at = datetime.utcnow()
        self.update_entity(ctx, host, status="provisioned", provisioned_at=provisioned_at)
        ctx.metadata(host).set("provisioned_at", provisioned_at.isoformat())


PROVISIONING_STEPS = [
    StartProvisioningStep,
    UpdatePackagesStep,
    InstallPackagesStep,
    InstallDockerStep,
    UpdateFirewallStep,
    InstallTraefikStep,
]
