"""Workflow state projection.

``build_workflow_state`` is a pure function of a workflow definition and a
metadata snapshot. It never writes, so calling it twice on the same snapshot
gives equal results. The overall phase is exposed both as a plain status
string (for JSON observers) and as a small tagged union.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

STEP_PENDING = "pending"
STEP_IN_PROGRESS = "in-progress"
STEP_COMPLETED = "completed"
STEP_FAILED = "failed"

CURRENT_STEP_COMPLETED = "completed"
CURRENT_STEP_FAILED = "failed"


@dataclass(frozen=True)
class Idle:
    status = "idle"


@dataclass(frozen=True)
class Running:
    step_id: Optional[str]
    status = "running"


@dataclass(frozen=True)
class Completed:
    status = "completed"


@dataclass(frozen=True)
class Failed:
    step_id: Optional[str]
    reason: Optional[str] = None
    status = "failed"


Phase = Union[Idle, Running, Completed, Failed]


@dataclass
class StepState:
    id: str
    label: str
    description: str
    icon: str
    estimated_duration: int
    status: str = STEP_PENDING
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    failed_at: Optional[str] = None
    error_message: Optional[str] = None
    duration: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "description": self.description,
            "icon": self.icon,
            "estimatedDuration": self.estimated_duration,
            "status": self.status,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "failedAt": self.failed_at,
            "errorMessage": self.error_message,
            "duration": self.duration,
        }


@dataclass
class WorkflowState:
    type: Optional[str]
    name: Optional[str]
    category: Optional[str]
    steps: List[StepState] = field(default_factory=list)
    current_step_id: Optional[str] = None
    phase: Phase = field(default_factory=Idle)
    total: int = 0
    completed: int = 0
    percentage: float = 0.0
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    failed_at: Optional[str] = None

    @property
    def status(self) -> str:
        return self.phase.status

    def step(self, step_id: str) -> Optional[StepState]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "name": self.name,
            "category": self.category,
            "steps": [step.to_dict() for step in self.steps],
            "currentStepId": self.current_step_id,
            "status": self.status,
            "progress": {
                "total": self.total,
                "completed": self.completed,
                "percentage": self.percentage,
            },
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "failedAt": self.failed_at,
        }


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _duration(started_at: Optional[str], finished_at: Optional[str]) -> Optional[float]:
    started = _parse_timestamp(started_at)
    finished = _parse_timestamp(finished_at)
    if not started or not finished:
        return None
    return round((finished - started).total_seconds(), 3)


def _phase(current_step: Optional[str], metadata: Dict[str, Any], steps: List[StepState]) -> Phase:
    if current_step == CURRENT_STEP_COMPLETED:
        return Completed()
    if current_step == CURRENT_STEP_FAILED:
        failed_step = metadata.get("failed_step")
        entry = (metadata.get("step_history") or {}).get(failed_step) or {}
        return Failed(step_id=failed_step, reason=entry.get("error_message"))
    running = [step for step in steps if step.status == STEP_IN_PROGRESS]
    if running:
        # the pointer can lag behind step_history, so trust the history
        running_ids = [step.id for step in running]
        step_id = current_step if current_step in running_ids else running_ids[0]
        return Running(step_id=step_id)
    return Idle()


def build_workflow_state(
    definition: Optional[Dict[str, Any]],
    metadata: Optional[Dict[str, Any]],
) -> WorkflowState:
    """Project a metadata snapshot onto a workflow definition.

    When ``definition`` is None the ``workflow_definition`` stored in the
    metadata is used.
    """
    metadata = metadata or {}
    definition = definition or metadata.get("workflow_definition") or {}
    history = metadata.get("step_history") or {}
    current_step = metadata.get("current_step")

    steps = []
    for step_def in definition.get("steps", []):
        entry = history.get(step_def["id"]) or {}
        finished_at = entry.get("completed_at") or entry.get("failed_at")
        steps.append(StepState(
            id=step_def["id"],
            label=step_def.get("label", step_def["id"]),
            description=step_def.get("description", ""),
            icon=step_def.get("icon", "circle"),
            estimated_duration=step_def.get("estimated_duration", 5),
            status=entry.get("status") or STEP_PENDING,
            started_at=entry.get("started_at"),
            completed_at=entry.get("completed_at"),
            failed_at=entry.get("failed_at"),
            error_message=entry.get("error_message"),
            duration=_duration(entry.get("started_at"), finished_at),
        ))

    total = len(steps)
    completed = len([step for step in steps if step.status == STEP_COMPLETED])
    percentage = round(completed / total * 100, 2) if total else 0.0

    return WorkflowState(
        type=definition.get("type"),
        name=definition.get("name"),
        category=definition.get("category"),
        steps=steps,
        current_step_id=current_step,
        phase=_phase(current_step, metadata, steps),
        total=total,
        completed=completed,
        percentage=percentage,
        started_at=metadata.get("workflow_started_at"),
        completed_at=metadata.get("workflow_completed_at"),
        failed_at=metadata.get("workflow_failed_at"),
    )
