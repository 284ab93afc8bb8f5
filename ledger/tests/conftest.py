import pytest

from ledger.facade import LedgerFacade
from ledger.referrals import ReferralGraph
from ledger.service import LedgerService
from ledger.settings import Settings
from ledger.storage import SnapshotStore


@pytest.fixture()
def settings(tmp_path):
    return Settings(DATA_FILE=tmp_path / "mockdb.json", PERSIST_RETRIES=0)


@pytest.fixture()
def store(tmp_path):
    store = SnapshotStore(tmp_path / "mockdb.json", persist_timeout=2.0, persist_retries=0)
    store.load_or_init()
    return store


@pytest.fixture()
def service(store):
    return LedgerService(store)


@pytest.fixture()
def graph(store):
    return ReferralGraph(store)


@pytest.fixture()
def facade(store, settings):
    return LedgerFacade(store, settings)
