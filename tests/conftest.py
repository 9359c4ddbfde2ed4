"""Shared fixtures: in-memory database, stub script engine, inline chains."""

import os
import tempfile

from cryptography.fernet import Fernet

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("SCRIPT_WORK_DIR", tempfile.mkdtemp(prefix="provisioner-tests-"))
os.environ.setdefault("CHAIN_DISPATCHER", "inline")
os.environ.setdefault("CLOUDFLARE_API_TOKEN", "cf-test-token")
os.environ.setdefault("CLOUDFLARE_EMAIL", "ops@example.com")
os.environ.setdefault("CLOUDFLARE_DOMAIN", "example.com")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from core.database import Base, SessionLocal
from modules.users.models import User  # noqa: F401
from modules.hosts.models import Host  # noqa: F401
from modules.attempts.models import Task, WorkAttempt  # noqa: F401
from modules.executions.models import ExecutionRecord  # noqa: F401
from modules.attempts.schemas import TaskCreate
from modules.attempts.service import WorkspaceService
from modules.hosts.schemas import HostCreate
from modules.hosts.service import HostProvisioningService
from modules.workflow.chain import ChainRunner
from modules.workflow.dispatcher import InlineChainDispatcher
from modules.workflow.publisher import InMemoryChangePublisher
from modules.workflow.steps import StepContext
from utils.script_engine import LOCAL, ExecutionResult, ScriptWrapper

test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
SessionLocal.configure(bind=test_engine)

PORT_OUTPUT = "[+] scanning\n__PORT_START__\n{\"ssh_port\": 18001}\n__PORT_END__\n"
DOCKER_PS_OUTPUT = (
    "Container n1 Started\n"
    "__DOCKER_PS_START__\n"
    "{\"ID\":\"abc\",\"Name\":\"n1\",\"Publishers\":[{\"PublishedPort\":8080}]}\n"
    "__DOCKER_PS_END__\n"
)
COMPOSE_YAML = """services:
  app:
    image: nginx:alpine
    ports:
      - "{{ssh_port}}:22"
    labels:
      - "traefik.http.routers.{{attempt_id}}.rule=Host(`{{workspace_domain}}`)"
"""


class StubEngine:
    """Answers scripts by the first rule whose fragment appears in the script."""

    def __init__(self):
        self.rules = []
        self.calls = []

    def when(self, fragment, output="", error_output="", exit_code=0, timed_out=False):
        self.rules.append((fragment, output, error_output, exit_code, timed_out))
        return self

    def execute_via_stdin(self, script, target=LOCAL, timeout_seconds=900):
        self.calls.append({"script": script, "target": target, "timeout": timeout_seconds})
        wrapped = ScriptWrapper().wrap(script)
        for fragment, output, error_output, exit_code, timed_out in self.rules:
            if fragment in script:
                return ExecutionResult(wrapped, output, error_output, exit_code, timed_out)
        return ExecutionResult(wrapped, "ok\n", "", 0)

    def scripts(self):
        return [call["script"] for call in self.calls]


@pytest.fixture(autouse=True)
def database():
    Base.metadata.create_all(bind=test_engine)
    yield
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def publisher():
    return InMemoryChangePublisher()


@pytest.fixture
def stub_engine():
    return (
        StubEngine()
        .when("__PORT_START__", output=PORT_OUTPUT)
        .when("docker compose up -d", output=DOCKER_PS_OUTPUT)
    )


@pytest.fixture
def context_factory(stub_engine, publisher):
    def factory():
        return StepContext(SessionLocal(), engine=stub_engine, publisher=publisher)
    return factory


@pytest.fixture
def dispatcher(context_factory):
    return InlineChainDispatcher(ChainRunner(context_factory))


@pytest.fixture
def host(db, publisher):
    service = HostProvisioningService(db, publisher=publisher)
    return service.register_host(HostCreate(
        name="edge-1",
        ip_address="10.0.0.5",
        ssh_password="s3cret",
    ))


@pytest.fixture
def make_task(db, publisher):
    def make(host=None, **overrides):
        data = {
            "name": "nginx sandbox",
            "host_id": host.id if host is not None else None,
            "docker_compose_yaml": COMPOSE_YAML,
        }
        data.update(overrides)
        return WorkspaceService(db, publisher=publisher).create_task(TaskCreate(**data))
    return make
