from core.database import SessionLocal
from modules.workflow.chain import ChainRunner
from modules.workflow.dispatcher import InlineChainDispatcher, ThreadChainDispatcher
from modules.workflow.publisher import change_publisher
from modules.workflow.steps import StepContext
from config.settings import settings

def step_context_factory() -> StepContext:
    """Each chain run gets its own session"""
    return StepContext(SessionLocal(), publisher=change_publisher)

def build_dispatcher(mode: str = None, context_factory=step_context_factory):
    runner = ChainRunner(context_factory)
    if (mode or settings.CHAIN_DISPATCHER) == "inline":
        return InlineChainDispatcher(runner)
    return ThreadChainDispatcher(runner)

chain_dispatcher = build_dispatcher()

def get_dispatcher():
    return chain_dispatcher

def get_publisher():
    return change_publisher
