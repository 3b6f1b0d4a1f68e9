"""风控配置单元测试。"""

import json
import os
import sqlite3
import tempfile

import pytest

# 在导入 app 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="risk_cfg_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name

import app.database as _db_mod
from app.database import init_db
from app.services.platform_config import get_config, set_config
from app.services.risk_config import (
    CONFIG_KEY,
    DEFAULT_WEIGHTS,
    RiskConfigError,
    load_risk_config,
    update_risk_config,
)


@pytest.fixture(autouse=True)
def _setup_db():
    """每个测试前重建数据库。"""
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    conn.executescript("""
        DROP TABLE IF EXISTS settlement_event_logs;
        DROP TABLE IF EXISTS settlement_events;
        DROP TABLE IF EXISTS platform_fees;
        DROP TABLE IF EXISTS verification_logs;
        DROP TABLE IF EXISTS payment_submissions;
        DROP TABLE IF EXISTS payment_orders;
        DROP TABLE IF EXISTS wallet_transactions;
        DROP TABLE IF EXISTS wallets;
        DROP TABLE IF EXISTS system_config;
        DROP TABLE IF EXISTS admin;
    """)
    conn.close()
    init_db()
    yield


class TestLoadRiskConfig:
    """load_risk_config 单元测试。"""

    def test_defaults(self):
        config = load_risk_config()
        assert config.approve_below == 10
        assert config.reject_at == 70
        assert config.min_ocr_confidence == 60
        assert config.velocity_max_submissions == 5
        assert (config.min_width, config.max_width) == (300, 4000)
        assert (config.min_height, config.max_height) == (400, 6000)
        assert config.similar_lookback_days == 30
        assert config.weights == DEFAULT_WEIGHTS

    def test_stored_overrides_applied(self):
        set_config(CONFIG_KEY, json.dumps({"reject_at": 80, "weights": {"MISSING_EXIF": 0}}))
        config = load_risk_config()
        assert config.reject_at == 80
        assert config.weight_of("MISSING_EXIF") == 0
        assert config.weight_of("AMOUNT_MISMATCH") == 40

    def test_corrupt_value_falls_back_to_defaults(self):
        set_config(CONFIG_KEY, "{not json")
        assert load_risk_config().reject_at == 70

    def test_defaults_not_shared_between_instances(self):
        a = load_risk_config()
        a.weights["AMOUNT_MISMATCH"] = 1
        assert load_risk_config().weights["AMOUNT_MISMATCH"] == 40


class TestUpdateRiskConfig:
    """update_risk_config 单元测试。"""

    def test_update_persists(self):
        update_risk_config({"approve_below": 15, "weights": {"SIMILAR_IMAGE": 35}})
        stored = json.loads(get_config(CONFIG_KEY))
        assert stored["approve_below"] == 15
        assert stored["weights"]["SIMILAR_IMAGE"] == 35
        config = load_risk_config()
        assert config.approve_below == 15
        assert config.weight_of("SIMILAR_IMAGE") == 35

    def test_partial_updates_accumulate(self):
        update_risk_config({"approve_below": 15})
        update_risk_config({"reject_at": 90})
        config = load_risk_config()
        assert (config.approve_below, config.reject_at) == (15, 90)

    @pytest.mark.parametrize("changes", [
        {"approve_below": 80},
        {"reject_at": -1},
        {"max_attempts": 0},
        {"min_width": 5000},
        {"min_height": 6000, "max_height": 6000},
        {"min_ocr_confidence": "high"},
        {"weights": {"NOT_A_RULE": 10}},
        {"weights": {"AMOUNT_MISMATCH": -5}},
        {"weights": [1, 2]},
        {"unknown_setting": 1},
    ])
    def test_invalid_changes_rejected(self, changes):
        with pytest.raises(RiskConfigError):
            update_risk_config(changes)
        assert get_config(CONFIG_KEY) is None

    def test_dimension_bounds_configurable(self):
        update_risk_config({"min_width": 200, "max_height": 8000})
        config = load_risk_config()
        assert (config.min_width, config.max_height) == (200, 8000)
