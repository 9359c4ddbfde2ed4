from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import datetime
import secrets
import uuid
import logging

from config.settings import settings
from core.exceptions import ConfigurationError
from core.metadata import MetadataBag
from core.notes import append_note
from modules.workflow.chain import Chain
from modules.workflow.dispatcher import ChainDispatcher
from modules.workflow.publisher import ChangePublisher, broadcast_entity, change_publisher
from modules.workflow.tracker import StepTracker
from .models import Task, WorkAttempt
from .schemas import TaskCreate
from .steps import (
    CloseAttemptStep,
    CreateUserStep,
    DeleteWorkspaceStep,
    FindFreePortStep,
    FinalizeWorkspaceStep,
    SetDockerComposeStep,
    SetSshAccessStep,
    StartDockerComposeStep,
)

logger = logging.getLogger(__name__)

WORKSPACE_WORKFLOW = "workspace_provisioning"
TEARDOWN_WORKFLOW = "workspace_teardown"

def attempt_chain_key(attempt_id) -> str:
    return f"attempt:{attempt_id}"

class WorkspaceService:
    def __init__(self, db: Session, dispatcher: Optional[ChainDispatcher] = None, publisher: Optional[ChangePublisher] = None):
        self.db = db
        self.dispatcher = dispatcher
        self.publisher = publisher or change_publisher
        self.tracker = StepTracker(db, self.publisher)

    def get_task_by_id(self, task_id: uuid.UUID) -> Optional[Task]:
        """Get task by ID"""
        return self.db.query(Task).filter(Task.id == task_id).first()

    def get_attempt_by_id(self, attempt_id: uuid.UUID) -> Optional[WorkAttempt]:
        """Get work attempt by ID"""
        return self.db.query(WorkAttempt).filter(WorkAttempt.id == attempt_id).first()

    def get_task_attempts(self, task_id: uuid.UUID) -> List[WorkAttempt]:
        return self.db.query(WorkAttempt).filter(
            WorkAttempt.task_id == task_id
        ).order_by(WorkAttempt.created_at.desc()).all()

    def create_task(self, task_data: TaskCreate) -> Task:
        """Create a new task"""
        task = Task(**task_data.dict())

        self.db.add(task)
        self.db.commit()
        self.db.refresh(task)

        return task

    def build_chain(self, attempt: WorkAttempt) -> Chain:
        steps = [
            CreateUserStep(attempt.id),
            FindFreePortStep(attempt.id),
            SetDockerComposeStep(attempt.id),
            StartDockerComposeStep(attempt.id),
        ]
        if attempt.task.allow_ssh:
            steps.append(SetSshAccessStep(attempt.id))
        steps.append(FinalizeWorkspaceStep(attempt.id))
        return Chain(key=attempt_chain_key(attempt.id), steps=steps, name=f"workspace {attempt.id}")

    def start(self, task_id: uuid.UUID, user_id: Optional[uuid.UUID] = None) -> WorkAttempt:
        """
        Create a work attempt and, for sandbox tasks, dispatch the chain that
        builds its workspace on the task's server.
        """
        task = self.get_task_by_id(task_id)
        if not task:
            raise ValueError("Task not found")

        attempt = WorkAttempt(task_id=task.id, user_id=user_id, status='pending', meta={})
        self.db.add(attempt)
        self.db.commit()
        self.db.refresh(attempt)
        append_note(self.db, attempt, f"Attempt created for task {task.name}")

        if not task.sandbox:
            self._set_status(attempt, 'running', started_at=datetime.utcnow())
            append_note(self.db, attempt, "Task has no workspace, attempt is running")
            self.schedule_close(attempt)
            return attempt

        if not task.host_id:
            self._set_status(attempt, 'failed', failed_at=datetime.utcnow())
            append_note(self.db, attempt, "No server assigned to task")
            raise ConfigurationError("No server assigned to task")

        if self.dispatcher is None:
            raise ConfigurationError("No chain dispatcher configured")

        username = f"user_{attempt.id.hex[:12]}"
        workspace_domain = f"{secrets.token_hex(4)}.{settings.WORKSPACE_DOMAIN}"
        MetadataBag(self.db, attempt).merge({
            "username": username,
            "password": secrets.token_urlsafe(16),
            "workspace_path": f"/home/{username}/workspace_{attempt.id.hex[:12]}",
            "workspace_domain": workspace_domain,
            "domain": workspace_domain,
            "access_user": settings.WORKSPACE_ACCESS_USER,
            "access_password": secrets.token_urlsafe(12),
        })
        append_note(self.db, attempt, f"Workspace credentials generated for {username}")

        chain = self.build_chain(attempt)
        self.dispatcher.reserve(chain.key)
        try:
            self.tracker.initialize(attempt, chain.steps, WORKSPACE_WORKFLOW, "Workspace Provisioning")
            append_note(self.db, attempt, "Workspace provisioning queued")
            self.schedule_close(attempt)
        except Exception:
            self.dispatcher.release(chain.key)
            raise
        self.dispatcher.dispatch(chain)

        self.db.refresh(attempt)
        return attempt

    def build_close_chain(self, attempt: WorkAttempt) -> Chain:
        steps = [CloseAttemptStep(attempt.id)]
        if attempt.task.sandbox:
            steps.append(DeleteWorkspaceStep(attempt.id))
        return Chain(key=attempt_chain_key(attempt.id), steps=steps, name=f"close {attempt.id}")

    def schedule_close(self, attempt: WorkAttempt) -> None:
        """Close the attempt once its task timer runs out"""
        timer = attempt.task.timer or 0
        if timer <= 0 or self.dispatcher is None:
            return
        MetadataBag(self.db, attempt).set("timer", timer)
        self.dispatcher.dispatch_later(self.build_close_chain(attempt), timer * 60)
        append_note(self.db, attempt, f"Attempt will be closed in {timer} minutes")

    def teardown(self, attempt: WorkAttempt):
        """Remove the attempt's workspace user and containers from its server"""
        if self.dispatcher is None:
            raise ConfigurationError("No chain dispatcher configured")
        key = attempt_chain_key(attempt.id)
        self.dispatcher.reserve(key)
        try:
            self.dispatcher.cancel_scheduled(key)
            chain = Chain(key=key, steps=[DeleteWorkspaceStep(attempt.id)], name=f"teardown {attempt.id}")
            self.tracker.initialize(attempt, chain.steps, TEARDOWN_WORKFLOW, "Workspace Teardown")
            append_note(self.db, attempt, "Workspace teardown queued")
        except Exception:
            self.dispatcher.release(key)
            raise
        return self.dispatcher.dispatch(chain)

    def workflow_state(self, attempt: WorkAttempt):
        return self.tracker.state(attempt)

    def _set_status(self, attempt: WorkAttempt, status: str, **fields) -> None:
        attempt.status = status
        for field, value in fields.items():
            setattr(attempt, field, value)
        self.db.commit()
        broadcast_entity(self.publisher, attempt)
