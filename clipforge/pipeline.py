from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import sessionmaker

from .config import Settings
from .core.dispatcher import JobDispatcher
from .core.gate import ConcurrencyGate
from .core.ledger import CreditLedger
from .core.processor import ClipProcessorClient
from .core.steps import StepExecutor
from .core.storage import ObjectStore
from .core.workflow import ProcessVideoWorkflow, WorkflowDriver


@dataclass
class Pipeline:
    """Every orchestration component, wired once at start-up from explicit settings."""

    settings: Settings
    session_factory: sessionmaker
    store: ObjectStore
    ledger: CreditLedger
    gate: ConcurrencyGate
    executor: StepExecutor
    workflow: ProcessVideoWorkflow
    driver: WorkflowDriver
    dispatcher: JobDispatcher


def build_pipeline(
    settings: Settings,
    session_factory: sessionmaker,
    schedule: Callable[[str], None],
    store: Optional[ObjectStore] = None,
    processor: Optional[ClipProcessorClient] = None,
) -> Pipeline:
    store = store or ObjectStore.from_settings(settings)
    processor = processor or ClipProcessorClient.from_settings(settings)

    ledger = CreditLedger(session_factory)
    gate = ConcurrencyGate(session_factory)
    executor = StepExecutor(session_factory)
    workflow = ProcessVideoWorkflow(
        session_factory,
        executor,
        ledger,
        store,
        processor,
        bucket=settings.BUCKET_NAME,
    )
    driver = WorkflowDriver(session_factory, workflow, max_retries=settings.WORKFLOW_MAX_RETRIES)
    dispatcher = JobDispatcher(session_factory, ledger, gate, schedule)
    return Pipeline(
        settings=settings,
        session_factory=session_factory,
        store=store,
        ledger=ledger,
        gate=gate,
        executor=executor,
        workflow=workflow,
        driver=driver,
        dispatcher=dispatcher,
    )
