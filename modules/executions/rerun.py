import logging
import uuid
from typing import Optional

from config.settings import settings
from core.exceptions import ExecutionFailure
from modules.executions.models import ExecutionRecord
from modules.executions.service import ExecutionRecordService
from modules.hosts.models import Host
from modules.hosts.steps import host_target
from modules.workflow.chain import Chain
from modules.workflow.definitions import StepDefinition
from modules.workflow.dispatcher import ChainDispatcher
from modules.workflow.steps import Continue, Halt, ScriptStep, StepContext, StepOutcome
from utils.script_engine import LOCAL, ExecutionTarget

logger = logging.getLogger(__name__)


class RerunScriptStep(ScriptStep):
    """Replays the stored script of a pending re-run record.

    Execution records carry no workflow metadata, so this step only drives
    the record itself through running to its terminal status.
    """

    definition = StepDefinition(
        id="rerunning_script",
        label="Re-running Script",
        description="Re-running a recorded script",
        icon="refresh",
        estimated_duration=5,
    )
    entity_model = ExecutionRecord
    timeout = settings.STEP_TIMEOUT
    failure_message = "Failed to re-run script"

    def target_for(self, ctx: StepContext, record: ExecutionRecord) -> ExecutionTarget:
        if record.host_id is None:
            return LOCAL
        host = ctx.db.get(Host, record.host_id)
        return host_target(host) if host is not None else LOCAL

    def handle(self, ctx: StepContext) -> StepOutcome:
        record = self.load_entity(ctx)
        self.record = record
        target = self.target_for(ctx, record)

        ctx.records.start(record)
        result = ctx.engine.execute_via_stdin(
            record.script_content or "", target, timeout_seconds=self.timeout
        )
        if result.successful:
            ctx.records.complete(record, result)
            return Continue()

        failure = ExecutionFailure.from_result(record.script_name, result)
        ctx.records.fail(record, str(failure), result)
        return Halt(f"{self.failure_message}: {failure}")

    def on_terminal_failure(self, ctx: StepContext, error: BaseException) -> None:
        try:
            ctx.db.rollback()
            record = ctx.db.get(ExecutionRecord, self.entity_id)
            if record is not None and not record.is_terminal:
                ctx.records.fail(record, f"{self.failure_message}: {error}")
        except Exception as secondary:
            logger.warning(f"Could not mark re-run {self.entity_id} as failed: {secondary}")


def rerun_chain_key(record_id) -> str:
    return f"record:{record_id}"


def dispatch_rerun(
    records: ExecutionRecordService,
    record: ExecutionRecord,
    dispatcher: ChainDispatcher,
    user_id: Optional[uuid.UUID] = None,
) -> ExecutionRecord:
    """Copy ``record`` into a new pending record and dispatch its replay"""
    if not record.script_content:
        raise ValueError("Execution record has no script to re-run")

    rerun = records.create_rerun(record, user_id)
    dispatcher.dispatch(Chain(
        key=rerun_chain_key(rerun.id),
        steps=[RerunScriptStep(rerun.id)],
        name=f"re-run {record.script_name}",
    ))
    return rerun
