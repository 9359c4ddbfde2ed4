from pydantic import BaseModel
from typing import Optional, Dict, Any
from datetime import datetime
import uuid

class ExecutionRecordBase(BaseModel):
    script_name: Optional[str] = None
    script_path: Optional[str] = None
    status: str = 'pending'
    output: Optional[str] = None
    error_output: Optional[str] = None
    exit_code: Optional[int] = None

class ExecutionRecordResponse(ExecutionRecordBase):
    id: uuid.UUID
    user_id: Optional[uuid.UUID] = None
    host_id: Optional[uuid.UUID] = None
    task_id: Optional[uuid.UUID] = None
    attempt_id: Optional[uuid.UUID] = None
    meta: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    terminated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    timed_out_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class ExecutionRecordDetail(ExecutionRecordResponse):
    script_content: Optional[str] = None

class ExecutionStatusResponse(BaseModel):
    id: uuid.UUID
    status: str
    output: Optional[str] = None
    error_output: Optional[str] = None
    exit_code: Optional[int] = None
    script_content: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    failed_at: Optional[str] = None
    terminated_at: Optional[str] = None
    metadata: Dict[str, Any] = {}

class RerunRequest(BaseModel):
    user_id: Optional[uuid.UUID] = None

class ExecutionStats(BaseModel):
    total_executions: int
    successful_executions: int
    failed_executions: int
    running_executions: int
    average_duration: Optional[float] = None
