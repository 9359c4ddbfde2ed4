"""Base class for chain steps.

A step owns one unit of work against one entity (a host or a work attempt).
``handle`` never raises for the failures a step expects (bad template,
non-zero exit, missing structured output). It records them on the entity and
returns ``Halt`` so the runner stops the chain. Anything else propagates to
the runner, which calls ``on_terminal_failure``.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Dict, Optional, Union

from sqlalchemy.orm import Session

from config.settings import settings
from core.exceptions import (
    ConfigurationError,
    ExecutionFailure,
    ExtractionFailure,
    RenderError,
)
from core.metadata import MetadataBag
from core.notes import append_note
from modules.executions.models import ExecutionRecord
from modules.executions.service import ExecutionRecordService
from modules.workflow.definitions import StepDefinition, step_definition_for
from modules.workflow.publisher import ChangePublisher, broadcast_entity, change_publisher
from modules.workflow.tracker import StepTracker
from utils.script_engine import LOCAL, ExecutionResult, ExecutionTarget, ScriptEngine, script_engine
from utils.script_renderer import ScriptRenderer, script_renderer

logger = logging.getLogger(__name__)

EXPECTED_FAILURES = (RenderError, ExecutionFailure, ExtractionFailure)


@dataclass(frozen=True)
class Continue:
    pass


@dataclass(frozen=True)
class Halt:
    reason: str


StepOutcome = Union[Continue, Halt]


class StepContext:
    """Collaborators handed to every step of one chain run."""

    def __init__(
        self,
        db: Session,
        engine: Optional[ScriptEngine] = None,
        renderer: Optional[ScriptRenderer] = None,
        publisher: Optional[ChangePublisher] = None,
        user_id: Optional[uuid.UUID] = None,
    ):
        self.db = db
        self.engine = engine or script_engine
        self.renderer = renderer or script_renderer
        self.publisher = publisher or change_publisher
        self.user_id = user_id
        self.tracker = StepTracker(db, self.publisher)
        self.records = ExecutionRecordService(db, self.publisher)

    def metadata(self, entity: Any) -> MetadataBag:
        return MetadataBag(self.db, entity)


class ScriptRun:
    """Render, record and execute one script task.

    The execution record is created before the process starts and finalized
    exactly once: as failed right away when the script fails, otherwise when
    the ``with`` block exits (failed if the block raised, completed if not).
    """

    def __init__(
        self,
        step: "ScriptStep",
        ctx: StepContext,
        entity: Any,
        task: Any,
        target: ExecutionTarget = LOCAL,
        host: Any = None,
        attempt: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        self.step = step
        self.ctx = ctx
        self.entity = entity
        self.task = task
        self.target = target
        self.host = host
        self.attempt = attempt
        self.metadata = metadata or {}
        self.record: Optional[ExecutionRecord] = None
        self.result: Optional[ExecutionResult] = None

    def __enter__(self) -> ExecutionResult:
        script = self.ctx.renderer.render(self.task)

        self.record = self.ctx.records.create(
            self.task,
            script_content=script,
            host=self.host,
            attempt=self.attempt,
            user_id=self.ctx.user_id,
            metadata={"step": self.step.step_id, **self.metadata},
        )
        self.step.record = self.record

        self.result = self.ctx.engine.execute_via_stdin(
            script, self.target, timeout_seconds=self.step.timeout
        )
        if not self.result.successful:
            failure = ExecutionFailure.from_result(self.task.name, self.result)
            self.ctx.records.fail(self.record, str(failure), self.result)
            raise failure
        return self.result

    def __exit__(self, exc_type, exc, tb):
        if self.record is None or self.record.is_terminal:
            return False
        if exc is None:
            self.ctx.records.complete(self.record, self.result)
        else:
            self.ctx.records.fail(self.record, str(exc), self.result)
        return False


class ScriptStep:
    definition: ClassVar[Optional[StepDefinition]] = None
    entity_model: ClassVar[Any] = None
    timeout: ClassVar[int] = settings.STEP_TIMEOUT
    tries: ClassVar[int] = 1
    failure_message: ClassVar[str] = "Step failed"

    def __init__(self, entity_id: uuid.UUID):
        self.entity_id = entity_id
        self.record: Optional[ExecutionRecord] = None

    @classmethod
    def step_definition(cls) -> StepDefinition:
        return step_definition_for(cls)

    @property
    def step_id(self) -> str:
        return self.step_definition().id

    @property
    def label(self) -> str:
        return self.step_definition().label

    def load_entity(self, ctx: StepContext) -> Any:
        entity = ctx.db.get(self.entity_model, self.entity_id)
        if entity is None:
            raise ConfigurationError(f"{self.entity_model.__name__} {self.entity_id} not found")
        return entity

    def execute(self, ctx: StepContext, entity: Any) -> None:
        raise NotImplementedError

    def script_run(self, ctx: StepContext, entity: Any, task: Any, **kwargs) -> ScriptRun:
        return ScriptRun(self, ctx, entity, task, **kwargs)

    def handle(self, ctx: StepContext) -> StepOutcome:
        self.record = None
        entity = self.load_entity(ctx)

        ctx.tracker.start_step(entity, self.step_id)
        append_note(ctx.db, entity, f"{self.label} started")

        try:
            self.execute(ctx, entity)
        except EXPECTED_FAILURES as e:
            reason = f"{self.failure_message}: {e}"
            logger.error(f"Step {self.step_id} failed for {type(entity).__name__} {entity.id}: {e}")
            self.mark_failed(ctx, entity, reason)
            return Halt(reason)

        ctx.tracker.complete_step(entity, self.step_id)
        append_note(ctx.db, entity, f"{self.label} completed")
        return Continue()

    def update_entity(self, ctx: StepContext, entity: Any, **fields: Any) -> None:
        for field, value in fields.items():
            setattr(entity, field, value)
        ctx.db.commit()
        broadcast_entity(ctx.publisher, entity)

    def mark_failed(self, ctx: StepContext, entity: Any, reason: str) -> None:
        fields: Dict[str, Any] = {"status": "failed"}
        if hasattr(type(entity), "failed_at"):
            fields["failed_at"] = datetime.utcnow()
        self.update_entity(ctx, entity, **fields)

        if self.record is not None and not self.record.is_terminal:
            ctx.records.fail(self.record, reason)

        ctx.tracker.fail_step(entity, self.step_id, reason)
        append_note(ctx.db, entity, reason)

    def on_terminal_failure(self, ctx: StepContext, error: BaseException) -> None:
        """Mark the entity failed after an unexpected error; never raises."""
        try:
            ctx.db.rollback()
            entity = ctx.db.get(self.entity_model, self.entity_id)
            if entity is None:
                return
            self.mark_failed(ctx, entity, f"{self.failure_message}: {error}")
        except Exception as secondary:
            logger.warning(
                f"Failure hook of step {self.step_id} could not record the failure "
                f"for {self.entity_id}: {secondary}"
            )

    def __repr__(self):
        return f"<{type(self).__name__}(entity_id='{self.entity_id}')>"
