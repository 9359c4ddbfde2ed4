from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Optional
import uuid

from core.database import get_db
from modules.executions.rerun import dispatch_rerun
from modules.executions.service import ExecutionRecordService
from modules.executions.schemas import (
    ExecutionRecordDetail,
    ExecutionRecordResponse,
    ExecutionStats,
    ExecutionStatusResponse,
    RerunRequest,
)
from api.dependencies import get_dispatcher, get_publisher

router = APIRouter()

def _get_record_or_404(service: ExecutionRecordService, execution_id: uuid.UUID):
    record = service.get(execution_id)
    if not record:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Execution not found"
        )
    return record

@router.get("/executions", response_model=List[ExecutionRecordResponse])
async def get_executions(
    limit: int = 50,
    status_filter: Optional[str] = None,
    db: Session = Depends(get_db),
    publisher=Depends(get_publisher)
):
    return ExecutionRecordService(db, publisher).list_recent(limit, status_filter)

@router.get("/executions/stats", response_model=ExecutionStats)
async def get_execution_stats(
    db: Session = Depends(get_db),
    publisher=Depends(get_publisher)
):
    return ExecutionRecordService(db, publisher).get_stats()

@router.get("/executions/{execution_id}", response_model=ExecutionRecordDetail)
async def get_execution(
    execution_id: uuid.UUID,
    db: Session = Depends(get_db),
    publisher=Depends(get_publisher)
):
    return _get_record_or_404(ExecutionRecordService(db, publisher), execution_id)

@router.get("/executions/{execution_id}/status", response_model=ExecutionStatusResponse)
async def get_execution_status(
    execution_id: uuid.UUID,
    db: Session = Depends(get_db),
    publisher=Depends(get_publisher)
):
    service = ExecutionRecordService(db, publisher)
    record = _get_record_or_404(service, execution_id)
    db.refresh(record)
    return service.polling_payload(record)

@router.post("/executions/{execution_id}/rerun", response_model=ExecutionRecordResponse, status_code=status.HTTP_202_ACCEPTED)
def rerun_execution(
    execution_id: uuid.UUID,
    rerun_data: Optional[RerunRequest] = None,
    db: Session = Depends(get_db),
    dispatcher=Depends(get_dispatcher),
    publisher=Depends(get_publisher)
):
    service = ExecutionRecordService(db, publisher)
    record = _get_record_or_404(service, execution_id)

    try:
        rerun = dispatch_rerun(service, record, dispatcher, rerun_data.user_id if rerun_data else None)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )

    db.refresh(rerun)
    return rerun
