import os

import pytest
import sqlalchemy as sa
from dotenv import load_dotenv

from catalog_sync.config import load_config
from catalog_sync.logging_setup import setup_logging
from catalog_sync.mapping_store import MappingStore
from catalog_sync.sync_engine import SyncEngine, TransferOptions


def _integration_enabled() -> bool:
    return os.getenv("RUN_INTEGRATION_TESTS") == "1"


def _env_ready() -> bool:
    required = ["APP_DATABASE_URL", "INTEGRATION_RUN_ID"]
    return all(os.getenv(name) for name in required)


@pytest.mark.integration
def test_live_dry_run_transfer():
    load_dotenv()
    if not _integration_enabled():
        pytest.skip("Set RUN_INTEGRATION_TESTS=1 to enable")
    if not _env_ready():
        pytest.skip("Missing APP_DATABASE_URL or INTEGRATION_RUN_ID in environment")

    config = load_config()
    logger = setup_logging("logs/integration_test.log", "INFO", "integration-transfer")
    store = MappingStore(sa.create_engine(config.app_database_url))
    engine = SyncEngine(store, logger, TransferOptions.from_config(config))
    try:
        summary = engine.transfer(int(os.environ["INTEGRATION_RUN_ID"]), dry_run=True)
    finally:
        engine.close()

    assert summary["mode"] == "dry_run"
    assert summary["checks"]["connected"] is True
    assert summary["checks"]["has_product_table"] is True
    assert summary["scope"]["langs"]
