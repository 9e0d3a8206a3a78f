import json
import logging

import pytest
import sqlalchemy as sa

from catalog_sync.logging_setup import LOGGER_NAME
from catalog_sync.main import main
from catalog_sync.mapping_store import MappingStore, metadata as app_metadata

from conftest import catalog_metadata


@pytest.fixture(autouse=True)
def env(monkeypatch, tmp_path):
    monkeypatch.setenv("APP_DATABASE_URL", f"sqlite:///{tmp_path / 'app.db'}")
    monkeypatch.setenv("LOG_FILE", str(tmp_path / "logs" / "transfer.log"))
    monkeypatch.setenv("MAPPING_FILE", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("TARGET_DATABASE_URL", raising=False)
    monkeypatch.delenv("DOWNLOAD_DIR", raising=False)
    monkeypatch.delenv("IMAGE_DIR", raising=False)
    monkeypatch.delenv("PRESTA_ROOT", raising=False)
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()


def _write(path, text):
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_validate_mapping_ok(tmp_path, capsys):
    mapping = _write(tmp_path / "mapping.yaml", "fields:\n  name: title\n")

    assert main(["validate-mapping", "--mapping", mapping]) == 0
    assert "OK" in capsys.readouterr().out


def test_validate_mapping_invalid(tmp_path, capsys):
    mapping = _write(tmp_path / "mapping.yaml", "fields: [unclosed\n")

    assert main(["validate-mapping", "--mapping", mapping]) == 2
    assert "failed" in capsys.readouterr().out


def test_validate_mapping_missing_file(capsys):
    assert main(["validate-mapping"]) == 2


def test_publish_then_transfer(tmp_path, monkeypatch, capsys):
    app_engine = sa.create_engine(f"sqlite:///{tmp_path / 'app.db'}")
    app_metadata.create_all(app_engine)
    run_id = MappingStore(app_engine).create_run("shop.example", {"title": "Widget", "reference": "SKU1"})
    app_engine.dispose()

    target_url = f"sqlite:///{tmp_path / 'catalog.db'}"
    target = sa.create_engine(target_url)
    catalog_metadata().create_all(target)
    with target.begin() as conn:
        conn.execute(sa.text("INSERT INTO ps_lang (id_lang, active) VALUES (1, 1)"))
        conn.execute(sa.text("INSERT INTO ps_shop (id_shop, active) VALUES (1, 1)"))
    target.dispose()
    monkeypatch.setenv("TARGET_DATABASE_URL", target_url)

    mapping = _write(tmp_path / "mapping.yaml", "fields:\n  name: title\n")
    assert main(["publish-mapping", "--domain", "www.shop.example", "--mapping", mapping]) == 0
    assert "version 1" in capsys.readouterr().out

    assert main(["transfer", "--run-id", str(run_id)]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["ok"] is True
    assert summary["mapping_version"] == 1
    assert summary["shops"] == [1]

    target = sa.create_engine(target_url)
    with target.connect() as conn:
        names = conn.execute(sa.text("SELECT name FROM ps_product_lang")).scalars().all()
    target.dispose()
    assert names == ["Widget"]


def test_transfer_unknown_run(tmp_path, capsys):
    app_engine = sa.create_engine(f"sqlite:///{tmp_path / 'app.db'}")
    app_metadata.create_all(app_engine)
    app_engine.dispose()

    assert main(["transfer", "--run-id", "42"]) == 2
    assert "not_found" in capsys.readouterr().out
