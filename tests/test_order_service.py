"""订单服务单元测试。"""

import os
import re
import sqlite3
import tempfile
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

# 在导入 app 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="order_svc_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-order-tests"

import app.database as _db_mod
from app.database import get_db, init_db
from app.services.order_service import (
    PURPOSE_PLATFORM_FEE,
    PURPOSE_TOPUP,
    STATUS_AWAITING_UPLOAD,
    STATUS_EXPIRED,
    OrderCreateError,
    OrderService,
    format_minor,
    parse_amount_to_minor,
)
from app.services.platform_config import save_receiving_account, set_config


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


@pytest.fixture
def svc():
    return OrderService()


@pytest.fixture
def account():
    """配置平台收款账户。"""
    return save_receiving_account("JUAN DELA CRUZ", "09171234567")


# ── 金额处理 ──────────────────────────────────────────────


class TestAmountHelpers:
    """金额解析与格式化测试。"""

    @pytest.mark.parametrize("value,expected", [
        ("1000", 100000),
        ("1,500.50", 150050),
        ("0.01", 1),
        (25, 2500),
    ])
    def test_parse_valid(self, value, expected):
        assert parse_amount_to_minor(value) == expected

    @pytest.mark.parametrize("value", ["", "abc", "0", "-5", "1.001", "NaN"])
    def test_parse_invalid(self, value):
        with pytest.raises(OrderCreateError):
            parse_amount_to_minor(value)

    def test_format_minor(self):
        assert format_minor(150050) == "1500.50"
        assert format_minor(1) == "0.01"


# ── 订单号 ────────────────────────────────────────────────


class TestGenerateOrderId:
    """订单号生成测试。"""

    def test_format(self, svc):
        assert re.fullmatch(r"ORD-[0-9A-Z]+-[0-9A-Z]{4}", svc.generate_order_id())

    def test_unique(self, svc):
        ids = {svc.generate_order_id() for _ in range(20)}
        assert len(ids) == 20


# ── 充值订单 ──────────────────────────────────────────────


class TestCreateTopupOrder:
    """create_topup_order 测试。"""

    def test_create_success(self, svc, account):
        order = svc.create_topup_order("u1", "1000")
        assert order.amount == 100000
        assert order.purpose == PURPOSE_TOPUP
        assert order.linked_bid_id is None
        assert order.receiving_account_name == "JUAN DELA CRUZ"
        assert order.expires_at - order.created_at == timedelta(minutes=30)
        stored = svc.get_order(order.order_id)
        assert stored.status == STATUS_AWAITING_UPLOAD
        assert stored.fulfilled is False

    def test_creates_wallet_on_first_order(self, svc, account):
        svc.create_topup_order("u1", "100")
        db = get_db()
        try:
            row = db.execute("SELECT balance FROM wallets WHERE user_id = 'u1'").fetchone()
        finally:
            db.close()
        assert row["balance"] == 0

    def test_wallet_created_once(self, svc, account):
        first = svc.ensure_wallet("u1")
        second = svc.ensure_wallet("u1")
        assert first.account_created_at == second.account_created_at

    def test_rejects_non_positive(self, svc, account):
        with pytest.raises(OrderCreateError):
            svc.create_topup_order("u1", "0")

    def test_rejects_above_max(self, svc, account):
        with pytest.raises(OrderCreateError, match="must not exceed"):
            svc.create_topup_order("u1", "50000.01")

    def test_requires_receiving_account(self, svc):
        with patch.dict(os.environ, {"GCASH_ACCOUNT_NAME": "", "GCASH_ACCOUNT_NUMBER": ""}):
            with pytest.raises(OrderCreateError, match="not configured"):
                svc.create_topup_order("u1", "100")

    def test_daily_limit(self, svc, account):
        with patch("app.services.order_service.MAX_DAILY_ORDERS", 2):
            svc.create_topup_order("u1", "100")
            svc.create_topup_order("u1", "100")
            with pytest.raises(OrderCreateError, match="daily"):
                svc.create_topup_order("u1", "100")
            # 其他用户不受影响
            svc.create_topup_order("u2", "100")


# ── 平台服务费订单 ────────────────────────────────────────


class TestCreatePlatformFeeOrder:
    """create_platform_fee_order 测试。"""

    def test_create_success(self, svc, account):
        order = svc.create_platform_fee_order("u1", "BID-1", "250")
        assert order.purpose == PURPOSE_PLATFORM_FEE
        assert order.linked_bid_id == "BID-1"
        assert order.amount == 25000

    def test_requires_bid_id(self, svc, account):
        with pytest.raises(OrderCreateError):
            svc.create_platform_fee_order("u1", "", "250")

    def test_reuses_open_order(self, svc, account):
        first = svc.create_platform_fee_order("u1", "BID-1", "250")
        second = svc.create_platform_fee_order("u1", "BID-1", "250")
        assert first.order_id == second.order_id

    def test_rejects_already_paid_bid(self, svc, account):
        db = get_db()
        try:
            db.execute(
                """INSERT INTO platform_fees (bid_id, order_id, user_id, amount)
                   VALUES ('BID-1', 'ORD-OLD', 'u1', 25000)"""
            )
            db.commit()
        finally:
            db.close()
        with pytest.raises(OrderCreateError, match="already been paid"):
            svc.create_platform_fee_order("u1", "BID-1", "250")


# ── 查询与展示 ────────────────────────────────────────────


class TestDisplayAndExpiry:
    """展示数据与过期处理测试。"""

    def test_display_masks_account_number(self, svc, account):
        set_config("qrcode_payload", "00020101021127...")
        order = svc.create_topup_order("u1", "1000")
        data = svc.display_data(order)
        assert data["gcash_account_number"] == "0917****567"
        assert data["amount"] == "1000.00"
        assert data["qrcode_payload"] == "00020101021127..."
        assert data["status"] == STATUS_AWAITING_UPLOAD

    def test_get_unknown_order(self, svc):
        assert svc.get_order("ORD-NOPE") is None

    def test_is_open(self, svc, account):
        order = svc.create_topup_order("u1", "1000")
        assert svc.is_open(order)
        assert not svc.is_open(order, now=order.expires_at + timedelta(seconds=1))

    def test_expire_orders(self, svc, account):
        order = svc.create_topup_order("u1", "1000")
        past = (datetime.now() - timedelta(minutes=1)).strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            db.execute("UPDATE payment_orders SET expires_at = ? WHERE order_id = ?", (past, order.order_id))
            db.commit()
        finally:
            db.close()

        assert svc.expire_orders() == 1
        expired = svc.get_order(order.order_id)
        assert expired.status == STATUS_EXPIRED
        assert svc.display_data(expired)["status"] == STATUS_EXPIRED
        assert svc.expire_orders() == 0

    def test_expire_skips_fulfilled(self, svc, account):
        order = svc.create_topup_order("u1", "1000")
        past = (datetime.now() - timedelta(minutes=1)).strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            db.execute(
                "UPDATE payment_orders SET expires_at = ?, fulfilled = 1 WHERE order_id = ?",
                (past, order.order_id),
            )
            db.commit()
        finally:
            db.close()
        assert svc.expire_orders() == 0
