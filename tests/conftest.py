import pytest

from fakes import FakeCompute, FakeHttp
from lab_config import LabConfig


@pytest.fixture
def config():
    # No waiting in tests
    return LabConfig(
        project='test-project',
        readiness_interval=0,
        readiness_attempts=3,
        instance_stop_interval=0,
        group_stable_interval=0,
        monitor_interval=0,
        benchmark_requests=1000,
        benchmark_concurrency=10,
    )


@pytest.fixture
def fake_api():
    return FakeCompute()


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ('LB_LAB_CONFIG', 'GCP_PROJECT', 'CLOUDSDK_CORE_PROJECT'):
        monkeypatch.delenv(var, raising=False)
