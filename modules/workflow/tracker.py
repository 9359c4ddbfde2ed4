import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from core.metadata import MetadataBag
from modules.workflow.definitions import build_workflow_definition
from modules.workflow.publisher import ChangePublisher, broadcast_entity, change_publisher
from modules.workflow.state import (
    CURRENT_STEP_COMPLETED,
    CURRENT_STEP_FAILED,
    STEP_COMPLETED,
    STEP_FAILED,
    STEP_IN_PROGRESS,
    WorkflowState,
    build_workflow_state,
)

logger = logging.getLogger(__name__)


def now_iso() -> str:
    return datetime.utcnow().isoformat()


class StepTracker:
    """Writes workflow progress into an entity's metadata bag.

    The ``step_history`` entry and the ``current_step`` pointer are separate
    writes, so a reader between the two can see a step in progress while the
    pointer still names the previous one.
    """

    def __init__(self, db: Session, publisher: Optional[ChangePublisher] = None):
        self.db = db
        self.publisher = publisher or change_publisher

    def bag(self, entity: Any) -> MetadataBag:
        return MetadataBag(self.db, entity)

    def initialize(
        self,
        entity: Any,
        steps: Iterable[Any],
        workflow_type: str,
        name: Optional[str] = None,
    ) -> Dict[str, Any]:
        definition = build_workflow_definition(steps, workflow_type, name)
        bag = self.bag(entity)
        bag.delete("failed_step", "workflow_completed_at", "workflow_failed_at")
        bag.merge({
            "workflow_definition": definition,
            "workflow_started_at": now_iso(),
            "current_step": None,
            "step_history": {},
        })
        self._broadcast(entity)
        return definition

    def update_step(self, entity: Any, step_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Merge ``fields`` into ``step_history[step_id]``; the pointer is left alone."""
        bag = self.bag(entity)
        history = bag.get("step_history", {}) or {}
        entry = dict(history.get(step_id) or {})
        entry.update(fields)
        history[step_id] = entry
        bag.set("step_history", history)
        self._broadcast(entity)
        return entry

    def set_current_step(self, entity: Any, value: Optional[str]) -> None:
        self.bag(entity).set("current_step", value)
        self._broadcast(entity)

    def start_step(self, entity: Any, step_id: str) -> None:
        self.update_step(entity, step_id, {
            "status": STEP_IN_PROGRESS,
            "started_at": now_iso(),
            "completed_at": None,
            "failed_at": None,
            "error_message": None,
        })
        self.set_current_step(entity, step_id)

    def complete_step(self, entity: Any, step_id: str) -> WorkflowState:
        self.update_step(entity, step_id, {
            "status": STEP_COMPLETED,
            "completed_at": now_iso(),
        })
        state = self.state(entity)
        if state.total and state.completed == state.total:
            self.complete_workflow(entity)
            state = self.state(entity)
        return state

    def fail_step(self, entity: Any, step_id: str, error: str) -> None:
        self.update_step(entity, step_id, {
            "status": STEP_FAILED,
            "failed_at": now_iso(),
            "error_message": error,
        })
        self.bag(entity).merge({
            "current_step": CURRENT_STEP_FAILED,
            "failed_step": step_id,
            "workflow_failed_at": now_iso(),
        })
        self._broadcast(entity)
        logger.warning(f"Workflow step {step_id} failed on {type(entity).__name__} {entity.id}: {error}")

    def complete_workflow(self, entity: Any) -> None:
        self.bag(entity).merge({
            "current_step": CURRENT_STEP_COMPLETED,
            "workflow_completed_at": now_iso(),
        })
        self._broadcast(entity)
        logger.info(f"Workflow completed on {type(entity).__name__} {entity.id}")

    def state(self, entity: Any) -> WorkflowState:
        return build_workflow_state(None, self.bag(entity).get_all())

    def _broadcast(self, entity: Any) -> None:
        broadcast_entity(self.publisher, entity)
