import pytest

from parcelflow.core.config import Settings
from parcelflow.core.engine import build_engine
from parcelflow.core.models import SourceKind


PARCELS = [
    {"parcelId": "APN-001", "address": " 12 Oak St ", "value": 410000, "squareFeet": 1850, "county": "Travis"},
    {"parcelId": "APN-002", "address": "7 Elm Ave", "value": 385000, "squareFeet": 1620, "county": "Travis"},
    {"parcelId": "APN-003", "address": "91 Pine Rd", "value": 512000, "squareFeet": 2300, "county": "Hays"},
    {"parcelId": "APN-004", "address": "3 Cedar Ln", "value": 298000, "squareFeet": 1210, "county": "Hays"},
    {"parcelId": "APN-005", "address": "55 Birch Ct", "value": 450000, "squareFeet": 1990, "county": "Travis"},
]


@pytest.fixture
def settings():
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        scheduler_enabled=False,
        metrics_mode="full",
        dispatcher_workers=2,
        scheduler_interval_seconds=0.05,
    )


@pytest.fixture
def engine(settings):
    """A fresh, fully wired engine for each test."""
    return build_engine(settings)


@pytest.fixture
def parcels():
    return [dict(p) for p in PARCELS]


@pytest.fixture
def source(engine, parcels):
    return engine.registry.register("assessor-staging", SourceKind.MEMORY, {"records": parcels})


@pytest.fixture
def target(engine):
    return engine.registry.register("valuation-store", SourceKind.MEMORY, {"records": []})


@pytest.fixture
def job(engine, source, target):
    return engine.orchestrator.create_job("assessor-sync", source.id, target.id)
