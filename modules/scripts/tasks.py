"""Typed script tasks.

Each template has exactly one ``ScriptTask`` subclass that owns a pydantic
parameter model, so a missing or mistyped parameter is rejected when the task
is built, before anything is rendered or spawned.
"""
from pydantic import BaseModel, ValidationError, validator
from typing import Any, ClassVar, Dict, List, Optional, Type

from core.exceptions import RenderError


class ScriptParams(BaseModel):
    class Config:
        frozen = True
        extra = "forbid"


class NoParams(ScriptParams):
    pass


class StartProvisionParams(ScriptParams):
    host_name: str


class InstallPackagesParams(ScriptParams):
    packages: List[str] = [
        "ca-certificates",
        "curl",
        "gnupg",
        "lsb-release",
        "apt-transport-https",
        "software-properties-common",
        "sshpass",
        "openssh-client",
        "netcat-openbsd",
        "yq",
    ]


class UpdateFirewallParams(ScriptParams):
    ports: List[int] = [22, 80, 443, 2222, 8080]


class InstallTraefikParams(ScriptParams):
    cloudflare_email: str
    cloudflare_api_token: str
    cloudflare_domain: str

    @validator('cloudflare_api_token', 'cloudflare_domain')
    def validate_not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError('must not be blank')
        return v


class CreateUserParams(ScriptParams):
    username: str
    password: str
    workspace_path: str

    @validator('username')
    def validate_username(cls, v):
        if not v or not v.replace('_', '').isalnum():
            raise ValueError('username must be alphanumeric or underscore')
        return v


class FindFreePortParams(ScriptParams):
    workspace_path: str
    start_port: int = 18000
    max_port: int = 65535


class SetDockerComposeParams(ScriptParams):
    workspace_path: str
    docker_compose_yaml: str
    pre_script: str = ""
    post_script: str = ""


class StartDockerComposeParams(ScriptParams):
    workspace_path: str
    timer: int = 0


class SetSshAccessParams(ScriptParams):
    workspace_path: str
    container_name: str


class DeleteWorkspaceParams(ScriptParams):
    username: str
    workspace_path: str
    container_name: Optional[str] = None
    allow_ssh: bool = False


class ScriptTask:
    """One unit of executable work: template, typed parameters, display name."""

    template: ClassVar[str]
    params_model: ClassVar[Type[ScriptParams]] = NoParams

    def __init__(self, name: str, **params: Any):
        self.name = name
        try:
            self.params = self.params_model(**params)
        except ValidationError as e:
            raise RenderError(f"Invalid parameters for template '{self.template}': {e}") from e

    def parameters(self) -> Dict[str, Any]:
        return self.params.dict()

    def __repr__(self):
        return f"<{type(self).__name__}(template='{self.template}', name='{self.name}')>"


class StartProvisionScript(ScriptTask):
    template = "server.start_provision"
    params_model = StartProvisionParams


class UpdatePackagesScript(ScriptTask):
    template = "server.update_packages"


class InstallPackagesScript(ScriptTask):
    template = "server.install_packages"
    params_model = InstallPackagesParams


class InstallDockerScript(ScriptTask):
    template = "server.install_docker"


class UpdateFirewallScript(ScriptTask):
    template = "server.update_firewall"
    params_model = UpdateFirewallParams


class InstallTraefikScript(ScriptTask):
    template = "server.install_traefik"
    params_model = InstallTraefikParams


class CreateUserScript(ScriptTask):
    template = "workspace.create_user"
    params_model = CreateUserParams


class FindFreePortScript(ScriptTask):
    template = "workspace.find_free_port"
    params_model = FindFreePortParams


class SetDockerComposeScript(ScriptTask):
    template = "workspace.set_docker_compose"
    params_model = SetDockerComposeParams


class StartDockerComposeScript(ScriptTask):
    template = "workspace.start_docker_compose"
    params_model = StartDockerComposeParams


class SetSshAccessScript(ScriptTask):
    template = "workspace.set_ssh_access"
    params_model = SetSshAccessParams


class DeleteWorkspaceScript(ScriptTask):
    template = "workspace.delete_workspace"
    params_model = DeleteWorkspaceParams
