import pytest

from onboardflow.checks import BASE_DOCUMENTS
from onboardflow.config import OnboardingConfig, RetryConfig
from onboardflow.db import WorkflowDB
from onboardflow.engine import create_engine
from onboardflow.gateway import StubGateway
from onboardflow.persistence import InMemoryWorkflowRepository, SQLiteWorkflowRepository
from onboardflow.retry import RetryManager


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def applicant():
    """Sole proprietor with every document attached and a green risk profile."""
    return {
        "name": "Acme Trading",
        "business_type": "sole_proprietor",
        "documents": list(BASE_DOCUMENTS),
        "risk_score": 0.1,
    }


@pytest.fixture
def config():
    return OnboardingConfig(
        retry=RetryConfig(max_attempts=3, backoff_base=1.5, jitter=0.0, max_delay=1.0),
        max_mandate_retries=3,
        lease_wait=2.0,
    )


@pytest.fixture
def repository():
    return InMemoryWorkflowRepository()


@pytest.fixture(params=["memory", "sqlite", "sqlmodel"])
def any_repository(request, tmp_path):
    if request.param == "memory":
        return InMemoryWorkflowRepository()
    if request.param == "sqlite":
        return SQLiteWorkflowRepository(tmp_path / "wf.db")
    return WorkflowDB(f"sqlite+aiosqlite:///{tmp_path / 'wf_sqlmodel.db'}")


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def engine(config, repository, gateway):
    return create_engine(
        config,
        repository=repository,
        gateway=gateway,
        retry=RetryManager(config.retry, sleep=no_sleep),
    )
