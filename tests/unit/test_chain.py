"""Unit tests for running job chains step by step."""

import logging
import uuid

import pytest

from core.database import SessionLocal
from core.exceptions import ConfigurationError, MetadataKeyNotFound
from modules.executions.models import ExecutionRecord
from modules.hosts.steps import HostStep
from modules.scripts.tasks import ScriptParams, ScriptTask
from modules.workflow.chain import Chain, ChainRunner
from modules.workflow.definitions import StepDefinition
from modules.workflow.steps import StepContext
from modules.workflow.tracker import StepTracker
from utils.script_renderer import ScriptRenderer


class EchoParams(ScriptParams):
    message: str


class EchoScript(ScriptTask):
    template = "test.echo"
    params_model = EchoParams


class EchoStep(HostStep):
    message = "hello"

    def execute(self, ctx, host):
        self.run_script(ctx, host, EchoScript(name=f"Echo {self.message}", message=self.message))


class FirstStep(EchoStep):
    definition = StepDefinition(id="first", label="First")
    message = "first"
    failure_message = "Failed first"


class SecondStep(EchoStep):
    definition = StepDefinition(id="second", label="Second")
    message = "second"
    failure_message = "Failed second"


class ThirdStep(EchoStep):
    definition = StepDefinition(id="third", label="Third")
    message = "third"
    failure_message = "Failed third"


class ExplodingStep(HostStep):
    definition = StepDefinition(id="exploding", label="Exploding")
    failure_message = "Exploded"

    def execute(self, ctx, host):
        raise RuntimeError("boom")


class BrokenHookStep(ExplodingStep):
    def mark_failed(self, ctx, entity, reason):
        raise RuntimeError("database went away")


class FlakyStep(EchoStep):
    definition = StepDefinition(id="flaky", label="Flaky")
    tries = 2
    message = "flaky"

    def __init__(self, entity_id):
        super().__init__(entity_id)
        self.calls = 0

    def execute(self, ctx, host):
        self.calls += 1
        if self.calls == 1:
            raise ConnectionError("connection reset")
        super().execute(ctx, host)


class ReadsUsernameStep(HostStep):
    definition = StepDefinition(id="reading_username", label="Reading Username")
    failure_message = "Failed to read username"

    def execute(self, ctx, host):
        ctx.metadata(host).get("username")


@pytest.fixture
def renderer(tmp_path):
    (tmp_path / "test").mkdir()
    (tmp_path / "test" / "echo.sh.j2").write_text("echo {{ message | shell_quote }}\n")
    return ScriptRenderer(str(tmp_path))


@pytest.fixture
def runner(stub_engine, renderer, publisher):
    return ChainRunner(lambda: StepContext(
        SessionLocal(), engine=stub_engine, renderer=renderer, publisher=publisher
    ))


def start_workflow(db, host, publisher, steps):
    StepTracker(db, publisher).initialize(host, steps, "test_chain", "Test Chain")
    return Chain(key=f"host:{host.id}", steps=[step(host.id) for step in steps])


def reload(db, host):
    db.expire_all()
    db.refresh(host)
    return host


def host_records(db, host):
    return db.query(ExecutionRecord).filter(
        ExecutionRecord.host_id == host.id
    ).order_by(ExecutionRecord.started_at.asc()).all()


def test_successful_chain_completes_every_step(db, host, publisher, runner, stub_engine):
    chain = start_workflow(db, host, publisher, [FirstStep, SecondStep, ThirdStep])

    result = runner.run(chain)

    assert result.succeeded
    assert result.executed == ["first", "second", "third"]
    host = reload(db, host)
    state = StepTracker(db, publisher).state(host)
    assert state.status == "completed"
    assert state.percentage == 100.0
    assert state.completed_at is not None
    assert all(step.completed_at for step in state.steps)
    assert host.meta["current_step"] == "completed"
    assert [record.status for record in host_records(db, host)] == ["completed"] * 3
    assert "echo first" in stub_engine.scripts()[0]
    assert stub_engine.calls[0]["target"].host == "10.0.0.5"


def test_failing_step_halts_the_chain(db, host, publisher, runner, stub_engine):
    stub_engine.when("second", output="partial\n", error_output="disk full\n", exit_code=1)
    chain = start_workflow(db, host, publisher, [FirstStep, SecondStep, ThirdStep])

    result = runner.run(chain)

    assert not result.succeeded
    assert result.halted_at == "second"
    assert "disk full" in result.reason
    assert len(stub_engine.calls) == 2

    host = reload(db, host)
    assert host.status == "failed"
    assert host.failed_at is not None
    history = host.meta["step_history"]
    assert history["first"]["status"] == "completed"
    assert history["second"]["status"] == "failed"
    assert "disk full" in history["second"]["error_message"]
    assert "third" not in history
    assert host.meta["current_step"] == "failed"
    assert host.meta["failed_step"] == "second"

    first, second = host_records(db, host)
    assert first.status == "completed"
    assert second.status == "failed"
    assert second.output == "partial\n"
    assert second.error_output == "disk full\n"
    assert second.exit_code == 1

    state = StepTracker(db, publisher).state(host)
    assert state.status == "failed"
    assert state.phase.step_id == "second"
    assert "Second started" in host.notes
    assert "Failed second" in host.notes


def test_unexpected_error_reaches_failure_hook(db, host, publisher, runner):
    chain = start_workflow(db, host, publisher, [FirstStep, ExplodingStep, ThirdStep])

    result = runner.run(chain)

    assert result.halted_at == "exploding"
    assert isinstance(result.error, RuntimeError)
    host = reload(db, host)
    assert host.status == "failed"
    assert host.meta["failed_step"] == "exploding"
    assert host.meta["step_history"]["exploding"]["error_message"] == "Exploded: boom"
    assert "third" not in host.meta["step_history"]


def test_failure_hook_errors_are_logged_not_raised(db, host, publisher, runner, caplog):
    chain = start_workflow(db, host, publisher, [BrokenHookStep])

    with caplog.at_level(logging.WARNING):
        result = runner.run(chain)

    assert result.status == "failed"
    assert "database went away" in caplog.text


def test_retries_unexpected_errors_up_to_tries(db, host, publisher, runner, stub_engine):
    chain = start_workflow(db, host, publisher, [FlakyStep, ThirdStep])

    result = runner.run(chain)

    assert result.succeeded
    assert chain.steps[0].calls == 2
    host = reload(db, host)
    assert host.meta["step_history"]["flaky"]["status"] == "completed"
    assert host.meta["current_step"] == "completed"


def test_missing_metadata_key_fails_with_a_descriptive_error(db, host, publisher, runner):
    chain = start_workflow(db, host, publisher, [ReadsUsernameStep])

    result = runner.run(chain)

    assert isinstance(result.error, MetadataKeyNotFound)
    assert result.error.key == "username"
    assert result.error.entity_type == "Host"
    assert "workflow_definition" in result.error.available_keys
    assert result.error.caller["function"] == "execute"
    host = reload(db, host)
    assert host.status == "failed"
    assert "username" in host.meta["step_history"]["reading_username"]["error_message"]


def test_missing_entity_fails_without_touching_anything(runner):
    result = runner.run(Chain(key="host:missing", steps=[FirstStep(uuid.uuid4())]))

    assert result.status == "failed"
    assert isinstance(result.error, ConfigurationError)
