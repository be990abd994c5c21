import copy

import pytest

from core.config import cfg
from core.db import DB


TEST_SECRET = "unit-test-secret-0123456789abcdefghijklmnopqrstuvwxyz"


@pytest.fixture(autouse=True)
def isolated_store(tmp_path):
    """每个用例使用独立的 SQLite 文件与配置副本。"""
    snapshot = copy.deepcopy(cfg.config)
    cfg.set("auth.secret_key", TEST_SECRET)
    cfg.set("auth.public_base_url", "")
    cfg.set("auth.expose_dev_link", True)
    cfg.set("ocr.base_url", "mock://ocr")
    cfg.set("jobs.session_sweep_enabled", False)
    DB.configure(f"sqlite:///{tmp_path / 'test.db'}")
    DB.create_tables()
    yield
    DB.get_engine().dispose()
    cfg.config = snapshot
