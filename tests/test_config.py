import pytest

from catalog_sync.config import load_config


OPTIONAL = [
    "TARGET_DATABASE_URL",
    "LOG_FILE",
    "LOG_LEVEL",
    "MAPPING_FILE",
    "TABLE_PREFIX",
    "CONNECT_TIMEOUT",
    "HTTP_TIMEOUT",
    "RETRY_COUNT",
    "RETRY_BACKOFF",
    "STAGING_ROOT",
    "DOWNLOAD_DIR",
    "IMAGE_DIR",
    "PRESTA_ROOT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in OPTIONAL:
        monkeypatch.delenv(name, raising=False)


def test_load_config_defaults(monkeypatch):
    monkeypatch.setenv("APP_DATABASE_URL", "sqlite:///app.db")

    config = load_config()
    assert config.app_database_url == "sqlite:///app.db"
    assert config.target_database_url is None
    assert config.log_level == "INFO"
    assert config.mapping_file == "mappings/mapping.yaml"
    assert config.table_prefix == "ps_"
    assert config.connect_timeout == 10
    assert config.retry_count == 2
    assert config.download_dir is None
    assert config.image_dir is None


def test_load_config_from_env(monkeypatch):
    monkeypatch.setenv("APP_DATABASE_URL", "sqlite:///app.db")
    monkeypatch.setenv("TARGET_DATABASE_URL", " mysql+pymysql://u:p@db/presta ")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("TABLE_PREFIX", "shop_")
    monkeypatch.setenv("HTTP_TIMEOUT", "7.5")
    monkeypatch.setenv("PRESTA_ROOT", "/var/www/presta")

    config = load_config()
    assert config.target_database_url == "mysql+pymysql://u:p@db/presta"
    assert config.log_level == "DEBUG"
    assert config.table_prefix == "shop_"
    assert config.http_timeout == 7.5
    assert config.download_dir.replace("\\", "/") == "/var/www/presta/download"
    assert config.image_dir.replace("\\", "/") == "/var/www/presta/img/p"


def test_download_dir_wins_over_presta_root(monkeypatch):
    monkeypatch.setenv("APP_DATABASE_URL", "sqlite:///app.db")
    monkeypatch.setenv("DOWNLOAD_DIR", "/srv/download")
    monkeypatch.setenv("PRESTA_ROOT", "/var/www/presta")

    assert load_config().download_dir == "/srv/download"


def test_load_config_requires_app_database(monkeypatch):
    monkeypatch.delenv("APP_DATABASE_URL", raising=False)
    with pytest.raises(ValueError):
        load_config()


def test_image_dir_wins_over_presta_root(monkeypatch):
    monkeypatch.setenv("APP_DATABASE_URL", "sqlite:///app.db")
    monkeypatch.setenv("IMAGE_DIR", " /srv/img/p ")
    monkeypatch.setenv("PRESTA_ROOT", "/var/www/presta")

    assert load_config().image_dir == "/srv/img/p"
