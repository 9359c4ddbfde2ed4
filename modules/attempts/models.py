from sqlalchemy import Column, String, Text, Integer, Boolean, JSON, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.dialects.postgresql import UUID
from core.database import BaseModel

ATTEMPT_STATUSES = ("pending", "running", "completed", "failed", "terminated")

class Task(BaseModel):
    __tablename__ = "tasks"

    name = Column(String(200), nullable=False)
    description = Column(Text)
    host_id = Column(UUID(as_uuid=True), ForeignKey("hosts.id"))
    sandbox = Column(Boolean, default=True, nullable=False)
    docker_compose_yaml = Column(Text)  # may contain {{placeholder}} slots
    pre_script = Column(Text)
    post_script = Column(Text)
    allow_ssh = Column(Boolean, default=False, nullable=False)
    timer = Column(Integer, default=0, nullable=False)  # minutes, 0 = no auto shutdown
    created_at = Column(DateTime, server_default=func.now())

    host = relationship("Host")

    def __repr__(self):
        return f"<Task(name='{self.name}', sandbox={self.sandbox})>"

class WorkAttempt(BaseModel):
    __tablename__ = "work_attempts"

    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    task_id = Column(UUID(as_uuid=True), ForeignKey("tasks.id"), nullable=False)
    status = Column(String(50), default='pending')  # pending, running, completed, failed, terminated
    container_id = Column(String(100))
    container_name = Column(String(255))
    container_port = Column(Integer)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    failed_at = Column(DateTime)
    meta = Column("metadata", JSON, default=dict)
    metadata_version = Column(Integer, default=0, nullable=False)
    notes = Column(Text)
    created_at = Column(DateTime, server_default=func.now())

    task = relationship("Task")

    @property
    def workflow_channel(self) -> str:
        return f"workspace-updates.{self.id}"

    def __repr__(self):
        return f"<WorkAttempt(id='{self.id}', status='{self.status}')>"
