from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional
import uuid
import logging
from datetime import datetime

from core.exceptions import RecordAlreadyFinalized
from modules.workflow.publisher import ChangePublisher, broadcast_record, change_publisher
from .models import ExecutionRecord
from .schemas import ExecutionStats

logger = logging.getLogger(__name__)

RERUN_SUFFIX = " (Re-run)"

class ExecutionRecordService:
    def __init__(self, db: Session, publisher: Optional[ChangePublisher] = None):
        self.db = db
        self.publisher = publisher or change_publisher

    def get(self, record_id: uuid.UUID) -> Optional[ExecutionRecord]:
        """Get execution record by ID"""
        return self.db.query(ExecutionRecord).filter(ExecutionRecord.id == record_id).first()

    def list_recent(self, limit: int = 50, status: Optional[str] = None) -> List[ExecutionRecord]:
        """Most recent execution records, optionally filtered by status"""
        query = self.db.query(ExecutionRecord)
        if status:
            query = query.filter(ExecutionRecord.status == status)
        return query.order_by(ExecutionRecord.started_at.desc()).limit(limit).all()

    def list_for_host(self, host_id: uuid.UUID) -> List[ExecutionRecord]:
        return self.db.query(ExecutionRecord).filter(
            ExecutionRecord.host_id == host_id
        ).order_by(ExecutionRecord.started_at.asc()).all()

    def list_for_attempt(self, attempt_id: uuid.UUID) -> List[ExecutionRecord]:
        return self.db.query(ExecutionRecord).filter(
            ExecutionRecord.attempt_id == attempt_id
        ).order_by(ExecutionRecord.started_at.asc()).all()

    def create(
        self,
        task: Any,
        script_content: Optional[str] = None,
        host: Any = None,
        attempt: Any = None,
        user_id: Optional[uuid.UUID] = None,
        metadata: Optional[Dict[str, Any]] = None,
        status: str = 'running',
    ) -> ExecutionRecord:
        """Create an execution record for one script run"""
        record = ExecutionRecord(
            script_name=task.name,
            script_path=getattr(task, "template", None),
            script_content=script_content,
            host_id=host.id if host is not None else None,
            attempt_id=attempt.id if attempt is not None else None,
            task_id=attempt.task_id if attempt is not None else None,
            user_id=user_id if user_id is not None else getattr(attempt, "user_id", None),
            meta=metadata or {},
            status=status,
            started_at=datetime.utcnow() if status == 'running' else None,
        )

        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)

        broadcast_record(self.publisher, record, created=True)
        return record

    def update(self, record: ExecutionRecord, fields: Dict[str, Any]) -> ExecutionRecord:
        """
        The only mutation path for a record.

        All fields are applied in one commit, so a terminal status and its
        timestamp are never observed apart. Terminal records are immutable.
        """
        if record.is_terminal:
            raise RecordAlreadyFinalized(record.id, record.status)

        for field, value in fields.items():
            setattr(record, field, value)

        self.db.commit()
        self.db.refresh(record)

        broadcast_record(self.publisher, record)
        return record

    def start(self, record: ExecutionRecord, script_content: Optional[str] = None) -> ExecutionRecord:
        fields = {"status": 'running', "started_at": datetime.utcnow()}
        if script_content is not None:
            fields["script_content"] = script_content
        return self.update(record, fields)

    def complete(self, record: ExecutionRecord, result) -> ExecutionRecord:
        """Finalize a record from a successful ``ExecutionResult``"""
        return self.update(record, {
            "status": 'completed',
            "completed_at": datetime.utcnow(),
            "output": result.output,
            "error_output": result.error_output,
            "exit_code": result.exit_code,
        })

    def fail(self, record: ExecutionRecord, error: str, result=None) -> ExecutionRecord:
        """
        Finalize a record as failed, keeping whatever output was captured.

        ``failed_at`` is the only terminal timestamp written. A timeout is told
        apart by ``exit_code`` 124 and the ``timed_out`` metadata flag.
        """
        fields: Dict[str, Any] = {"status": 'failed', "failed_at": datetime.utcnow()}

        if result is not None:
            fields.update({
                "output": result.output,
                "error_output": error if result.successful else (result.error_output or error),
                "exit_code": result.exit_code,
            })
            if result.timed_out:
                fields["meta"] = {**(record.meta or {}), "timed_out": True}
        else:
            fields["error_output"] = error
            if record.output is None:
                fields["output"] = ""

        return self.update(record, fields)

    def terminate(self, record: ExecutionRecord, reason: str = "Terminated") -> ExecutionRecord:
        return self.update(record, {
            "status": 'terminated',
            "terminated_at": datetime.utcnow(),
            "error_output": reason,
        })

    def create_rerun(self, record: ExecutionRecord, user_id: Optional[uuid.UUID] = None) -> ExecutionRecord:
        """Copy a record into a new pending one that replays the same script"""
        rerun = ExecutionRecord(
            script_name=f"{record.script_name}{RERUN_SUFFIX}",
            script_path=record.script_path,
            script_content=record.script_content,
            host_id=record.host_id,
            task_id=record.task_id,
            attempt_id=record.attempt_id,
            user_id=user_id or record.user_id,
            meta={**(record.meta or {}), "rerun_of": str(record.id)},
            status='pending',
        )

        self.db.add(rerun)
        self.db.commit()
        self.db.refresh(rerun)

        broadcast_record(self.publisher, rerun, created=True)
        logger.info(f"Created re-run {rerun.id} of execution record {record.id}")
        return rerun

    def polling_payload(self, record: ExecutionRecord) -> Dict[str, Any]:
        return {
            "id": str(record.id),
            "status": record.status,
            "output": record.output,
            "error_output": record.error_output,
            "exit_code": record.exit_code,
            "script_content": record.script_content,
            "started_at": record.started_at.isoformat() if record.started_at else None,
            "completed_at": record.completed_at.isoformat() if record.completed_at else None,
            "failed_at": record.failed_at.isoformat() if record.failed_at else None,
            "terminated_at": record.terminated_at.isoformat() if record.terminated_at else None,
            "metadata": record.meta or {},
        }

    def get_stats(self) -> ExecutionStats:
        """Get execution statistics"""
        records = self.list_recent(limit=1000)

        total = len(records)
        completed = len([r for r in records if r.status == 'completed'])
        failed = len([r for r in records if r.status in ('failed', 'terminated')])
        running = len([r for r in records if r.status == 'running'])

        durations = []
        for record in records:
            finished = record.finished_at
            if record.started_at and finished:
                durations.append((finished - record.started_at).total_seconds())

        average_duration = sum(durations) / len(durations) if durations else None

        return ExecutionStats(
            total_executions=total,
            successful_executions=completed,
            failed_executions=failed,
            running_executions=running,
            average_duration=average_duration
        )
