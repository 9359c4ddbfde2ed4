import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from modules.workflow.steps import Halt, ScriptStep, StepContext

logger = logging.getLogger(__name__)

CHAIN_COMPLETED = "completed"
CHAIN_FAILED = "failed"


@dataclass
class Chain:
    """Fixed, ordered steps for one entity. ``key`` identifies the entity."""

    key: str
    steps: List[ScriptStep]
    name: str = ""

    def __post_init__(self):
        if not self.name:
            self.name = self.key


@dataclass
class ChainResult:
    key: str
    status: str
    executed: List[str] = field(default_factory=list)
    halted_at: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.status == CHAIN_COMPLETED


class ChainRunner:
    """Runs a chain's steps in order, stopping at the first failure.

    An unexpected exception from a step is retried up to ``step.tries`` times,
    then handed to the step's ``on_terminal_failure`` hook.
    """

    def __init__(self, context_factory: Callable[[], StepContext]):
        self.context_factory = context_factory

    def run(self, chain: Chain) -> ChainResult:
        ctx = self.context_factory()
        try:
            return self._run(chain, ctx)
        finally:
            ctx.db.close()

    def _run(self, chain: Chain, ctx: StepContext) -> ChainResult:
        result = ChainResult(key=chain.key, status=CHAIN_COMPLETED)
        logger.info(f"▶️  Running chain {chain.name} ({len(chain.steps)} steps)")

        for step in chain.steps:
            result.executed.append(step.step_id)
            outcome, error = self._run_step(step, ctx)

            if error is not None:
                step.on_terminal_failure(ctx, error)
                result.status = CHAIN_FAILED
                result.halted_at = step.step_id
                result.reason = str(error)
                result.error = error
                break

            if isinstance(outcome, Halt):
                result.status = CHAIN_FAILED
                result.halted_at = step.step_id
                result.reason = outcome.reason
                break

        if result.succeeded:
            logger.info(f"✅ Chain {chain.name} completed")
        else:
            logger.error(f"❌ Chain {chain.name} halted at {result.halted_at}: {result.reason}")
        return result

    def _run_step(self, step: ScriptStep, ctx: StepContext):
        attempts = max(step.tries, 1)
        for attempt in range(1, attempts + 1):
            try:
                return step.handle(ctx), None
            except Exception as e:
                logger.exception(f"Step {step.step_id} raised on attempt {attempt}/{attempts}")
                ctx.db.rollback()
                if attempt == attempts:
                    return None, e
        return None, None
