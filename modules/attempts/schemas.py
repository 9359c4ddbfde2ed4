from pydantic import BaseModel, validator
from typing import Optional
from datetime import datetime
import uuid

class TaskBase(BaseModel):
    name: str
    description: Optional[str] = None
    host_id: Optional[uuid.UUID] = None
    sandbox: bool = True
    docker_compose_yaml: Optional[str] = None
    pre_script: Optional[str] = None
    post_script: Optional[str] = None
    allow_ssh: bool = False
    timer: int = 0

    @validator('name')
    def validate_name(cls, v):
        if len(v) < 1 or len(v) > 200:
            raise ValueError('Name must be between 1 and 200 characters')
        return v

    @validator('timer')
    def validate_timer(cls, v):
        if v < 0:
            raise ValueError('Timer cannot be negative')
        return v

class TaskCreate(TaskBase):
    @validator('docker_compose_yaml')
    def validate_compose(cls, v, values):
        if values.get('sandbox', True) and not (v and v.strip()):
            raise ValueError('Sandbox tasks need a docker-compose definition')
        return v

class TaskResponse(TaskBase):
    id: uuid.UUID
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class AttemptStart(BaseModel):
    task_id: uuid.UUID
    user_id: Optional[uuid.UUID] = None

class AttemptResponse(BaseModel):
    id: uuid.UUID
    task_id: uuid.UUID
    user_id: Optional[uuid.UUID] = None
    status: str
    container_id: Optional[str] = None
    container_name: Optional[str] = None
    container_port: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
