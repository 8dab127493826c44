import pytest

from fakes import FakeLoadGenerator, MockTargets
from loadtester.store import ResultsStore


@pytest.fixture
def mock_targets() -> MockTargets:
    return MockTargets()


@pytest.fixture
def fake_loadgen() -> FakeLoadGenerator:
    return FakeLoadGenerator()


@pytest.fixture
def store(tmp_path) -> ResultsStore:
    return ResultsStore(str(tmp_path / "results"), str(tmp_path / "fallback"))
