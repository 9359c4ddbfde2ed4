from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List
import uuid

from core.database import get_db
from core.exceptions import ChainAlreadyRunning, ConfigurationError
from core.notes import get_notes
from modules.attempts.service import WorkspaceService
from modules.attempts.schemas import AttemptResponse, AttemptStart, TaskCreate, TaskResponse
from modules.hosts.schemas import WorkflowStatusResponse
from modules.executions.schemas import ExecutionRecordResponse
from modules.executions.service import ExecutionRecordService
from api.dependencies import get_dispatcher, get_publisher

router = APIRouter()

def _get_attempt_or_404(service: WorkspaceService, attempt_id: uuid.UUID):
    attempt = service.get_attempt_by_id(attempt_id)
    if not attempt:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Attempt not found"
        )
    return attempt

@router.post("/tasks", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(
    task_data: TaskCreate,
    db: Session = Depends(get_db),
    publisher=Depends(get_publisher)
):
    return WorkspaceService(db, publisher=publisher).create_task(task_data)

@router.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    publisher=Depends(get_publisher)
):
    task = WorkspaceService(db, publisher=publisher).get_task_by_id(task_id)
    if not task:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Task not found"
        )
    return task

@router.get("/tasks/{task_id}/attempts", response_model=List[AttemptResponse])
async def get_task_attempts(
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    publisher=Depends(get_publisher)
):
    return WorkspaceService(db, publisher=publisher).get_task_attempts(task_id)

@router.post("/attempts", response_model=AttemptResponse, status_code=status.HTTP_201_CREATED)
def start_attempt(
    attempt_data: AttemptStart,
    db: Session = Depends(get_db),
    dispatcher=Depends(get_dispatcher),
    publisher=Depends(get_publisher)
):
    service = WorkspaceService(db, dispatcher, publisher)
    try:
        return service.start(attempt_data.task_id, attempt_data.user_id)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    except ConfigurationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )

@router.get("/attempts/{attempt_id}", response_model=AttemptResponse)
async def get_attempt(
    attempt_id: uuid.UUID,
    db: Session = Depends(get_db),
    publisher=Depends(get_publisher)
):
    return _get_attempt_or_404(WorkspaceService(db, publisher=publisher), attempt_id)

@router.get("/attempts/{attempt_id}/status", response_model=WorkflowStatusResponse)
async def get_attempt_status(
    attempt_id: uuid.UUID,
    db: Session = Depends(get_db),
    publisher=Depends(get_publisher)
):
    service = WorkspaceService(db, publisher=publisher)
    attempt = _get_attempt_or_404(service, attempt_id)
    db.refresh(attempt)
    metadata = attempt.meta or {}
    return WorkflowStatusResponse(
        id=attempt.id,
        status=attempt.status,
        current_step=metadata.get("current_step"),
        metadata=metadata,
        workflow=service.workflow_state(attempt).to_dict(),
    )

@router.get("/attempts/{attempt_id}/workflow")
async def get_attempt_workflow(
    attempt_id: uuid.UUID,
    db: Session = Depends(get_db),
    publisher=Depends(get_publisher)
):
    service = WorkspaceService(db, publisher=publisher)
    attempt = _get_attempt_or_404(service, attempt_id)
    return service.workflow_state(attempt).to_dict()

@router.get("/attempts/{attempt_id}/notes")
async def get_attempt_notes(
    attempt_id: uuid.UUID,
    db: Session = Depends(get_db),
    publisher=Depends(get_publisher)
):
    attempt = _get_attempt_or_404(WorkspaceService(db, publisher=publisher), attempt_id)
    return {"notes": get_notes(attempt)}

@router.get("/attempts/{attempt_id}/executions", response_model=List[ExecutionRecordResponse])
async def get_attempt_executions(
    attempt_id: uuid.UUID,
    db: Session = Depends(get_db),
    publisher=Depends(get_publisher)
):
    _get_attempt_or_404(WorkspaceService(db, publisher=publisher), attempt_id)
    return ExecutionRecordService(db, publisher).list_for_attempt(attempt_id)

@router.post("/attempts/{attempt_id}/teardown", status_code=status.HTTP_202_ACCEPTED)
def teardown_attempt(
    attempt_id: uuid.UUID,
    db: Session = Depends(get_db),
    dispatcher=Depends(get_dispatcher),
    publisher=Depends(get_publisher)
):
    service = WorkspaceService(db, dispatcher, publisher)
    attempt = _get_attempt_or_404(service, attempt_id)
    try:
        service.teardown(attempt)
    except ChainAlreadyRunning as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e)
        )
    return {"message": "Workspace teardown started", "attempt_id": str(attempt_id)}
