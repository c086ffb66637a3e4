import pytest
import pytest_asyncio

from pagewright.config import DispatcherConfig
from pagewright.constants import WorkflowType
from pagewright.contracts import WorkflowRun
from pagewright.dispatch import TaskDispatcher
from pagewright.persistence import InMemoryWorkflowRepository
from pagewright.registry import HandlerRegistry
from pagewright.state import WorkflowStateMachine


@pytest.fixture
def repo():
    return InMemoryWorkflowRepository()


@pytest.fixture
def registry():
    return HandlerRegistry()


@pytest.fixture
def dispatcher(repo, registry):
    return TaskDispatcher(repo, registry, DispatcherConfig(max_concurrent_tasks=5))


@pytest.fixture
def state(repo, dispatcher):
    return WorkflowStateMachine(repo, dispatcher)


@pytest_asyncio.fixture
async def run(repo):
    """A running run with no tasks."""
    return await repo.create_run(
        WorkflowRun(owner="alice", workflow_type=WorkflowType.SITE_BUILD)
    )
