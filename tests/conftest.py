"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for gcp_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from gcp_mock import MockGcpProvider  # noqa: E402
from vmstack.config import Config, SessionContext  # noqa: E402
from vmstack.models import StackInput  # noqa: E402
from vmstack.state import MemoryStateStore  # noqa: E402

PROJECT_ID = "my-project-123"
REGION = "us-central1"


@pytest.fixture
def session() -> SessionContext:
    return SessionContext(project_id=PROJECT_ID, region=REGION)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        project_id=PROJECT_ID,
        region=REGION,
        stack_file=tmp_path / "stack.yaml",
        state_file=tmp_path / "state.yaml",
        retry_backoff_base_seconds=0,
        operation_timeout_seconds=5,
    )


@pytest.fixture
def web_stack() -> StackInput:
    """The web/prod stack: new IP, new service account, login for one group."""
    return StackInput(
        instance_name="web",
        name_suffix="prod",
        subnetwork="projects/my-project-123/regions/us-central1/subnetworks/app",
        create_external_ip=True,
        allow_login=True,
        sa_email="",
        login_user_groups=["ops@example.com"],
        login_service_accounts=[],
    )


@pytest.fixture
def provider() -> MockGcpProvider:
    return MockGcpProvider(project_id=PROJECT_ID, region=REGION)


@pytest.fixture
def state() -> MemoryStateStore:
    return MemoryStateStore()
