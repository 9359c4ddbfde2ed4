from sqlalchemy import Column, String, Text, Integer, JSON, DateTime, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from core.database import BaseModel

TERMINAL_STATUSES = ("completed", "failed", "terminated")
# at most one of these is set on a record
TERMINAL_TIMESTAMPS = ("completed_at", "failed_at", "terminated_at", "cancelled_at", "timed_out_at")

class ExecutionRecord(BaseModel):
    __tablename__ = "script_job_runs"

    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    host_id = Column(UUID(as_uuid=True), ForeignKey("hosts.id"))
    task_id = Column(UUID(as_uuid=True), ForeignKey("tasks.id"))
    attempt_id = Column(UUID(as_uuid=True), ForeignKey("work_attempts.id"))
    status = Column(String(50), default='pending')  # pending, running, completed, failed, terminated
    script_name = Column(String(255))
    script_path = Column(String(255))  # template id
    script_content = Column(Text)
    output = Column(Text)
    error_output = Column(Text)
    exit_code = Column(Integer)
    meta = Column("metadata", JSON, default=dict)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    failed_at = Column(DateTime)
    terminated_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    timed_out_at = Column(DateTime)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def finished_at(self):
        for name in TERMINAL_TIMESTAMPS:
            value = getattr(self, name)
            if value is not None:
                return value
        return None

    def __repr__(self):
        return f"<ExecutionRecord(id='{self.id}', script='{self.script_name}', status='{self.status}')>"
