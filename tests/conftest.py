"""
Pytest fixtures for credit engine tests. A settable clock keeps SLA,
freshness and anomaly windows deterministic; stores are in-memory unless a
test asks for SQLite via tmp_path.
"""

from __future__ import annotations

import itertools

import pytest

USER = "0x742d35cc6634c0532925a3b844bc454e4438f44e"
OTHER_USER = "0x8ba1f109551bd432803012645ac136ddd64dba72"
START_TS = 1_700_000_000.0


class FakeClock:
    """Callable clock; tests move it with advance() or by setting now."""

    def __init__(self, now: float = START_TS) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_event(clock):
    """
    Factory for CategorizedEvent. Defaults are an Aave V2 lending event:
    defiReliability impact 1.0, risk 0.2, data weight 1.5, 0.1 ETH.
    """
    from backend_credit.analysis_engine.models import CategorizedEvent, Dimension

    counter = itertools.count(1)

    def _make(**overrides):
        fields = {
            "tx_hash": f"0xtx{next(counter):04d}",
            "user_address": USER,
            "impacts": {Dimension.DEFI_RELIABILITY: 1.0},
            "risk_score": 0.2,
            "data_weight": 1.5,
            "protocol": "Aave V2",
            "timestamp": clock.now,
            "value_eth": 0.1,
        }
        fields.update(overrides)
        return CategorizedEvent(**fields)

    return _make


@pytest.fixture
def make_engine(clock):
    """Factory for ScoringEngineService on the fake clock; engines are closed after the test."""
    from backend_credit.scoring_engine.service import ScoringEngineService

    engines = []

    def _make(**kwargs):
        kwargs.setdefault("clock", clock)
        engine = ScoringEngineService(**kwargs)
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.close()


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def client(clock):
    """FastAPI TestClient over an in-memory engine; lifespan runs inside the with-block."""
    from fastapi.testclient import TestClient

    from backend_credit.agent_worker.worker import WorkerConfig
    from backend_credit.api_server.server import create_app
    from backend_credit.scoring_engine.service import ScoringEngineService

    app = create_app(
        engine_factory=lambda: ScoringEngineService(clock=clock),
        worker_config=WorkerConfig(worker_count=2),
    )
    with TestClient(app) as c:
        yield c
