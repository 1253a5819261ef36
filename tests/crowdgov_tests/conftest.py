import pytest

from crowdgov.core.asset_transfer import InMemoryAssetLedger
from crowdgov.core.config import GovernanceConfig
from crowdgov.core.logical_clock import ActionContext
from crowdgov.core.record_store import RecordStore
from crowdgov.governance.governance_engine import GovernanceEngine

ESCROW = "crowdgov.escrow"
DAO = "dao.alpha"


@pytest.fixture
def store():
    """Empty record store with its own audit log"""
    return RecordStore()


@pytest.fixture
def assets():
    return InMemoryAssetLedger()


@pytest.fixture
def at():
    """Build an ActionContext: at("alice", 5)"""

    def make(caller: str, now: int = 0) -> ActionContext:
        return ActionContext(caller=caller, now=now)

    return make


@pytest.fixture
def config():
    return GovernanceConfig(escrow_account=ESCROW, metrics_enabled=False)


@pytest.fixture
def engine(config, assets):
    return GovernanceEngine(config=config, assets=assets)


@pytest.fixture
def dao_engine(engine):
    """Engine with dao.alpha registered by alice"""
    engine.create_dao("alice", DAO, "Alpha", description="Test DAO", token_asset="ALPHA")
    return engine
