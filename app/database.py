"""
SQLite 数据库连接管理和初始化。
使用同步 sqlite3，提供 get_db() 获取连接。
"""

import os
import sqlite3
from pathlib import Path

import bcrypt
from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("DB_PATH", "data/proofcheck.db")


def get_db() -> sqlite3.Connection:
    """获取 SQLite 数据库连接，启用 WAL 模式和外键约束。"""
    conn = sqlite3.connect(DB_PATH, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


# ── 建表 SQL ──────────────────────────────────────────────

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS admin (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    username        VARCHAR(64)  NOT NULL UNIQUE,
    password_hash   VARCHAR(128) NOT NULL,
    login_fail_count INTEGER     DEFAULT 0,
    locked_until    DATETIME,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS system_config (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    config_key      VARCHAR(64)  NOT NULL UNIQUE,
    config_value    TEXT,
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS wallets (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         VARCHAR(64)  NOT NULL UNIQUE,
    balance         INTEGER      NOT NULL DEFAULT 0,
    account_created_at DATETIME  NOT NULL,
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS wallet_transactions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         VARCHAR(64)  NOT NULL,
    order_id        VARCHAR(40)  NOT NULL UNIQUE,
    submission_id   INTEGER,
    type            VARCHAR(16)  NOT NULL DEFAULT 'topup',
    amount          INTEGER      NOT NULL,
    balance_after   INTEGER      NOT NULL,
    description     TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS payment_orders (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id        VARCHAR(40)  NOT NULL UNIQUE,
    user_id         VARCHAR(64)  NOT NULL,
    amount          INTEGER      NOT NULL,
    purpose         VARCHAR(16)  NOT NULL,
    linked_bid_id   VARCHAR(64),
    receiving_account_name   VARCHAR(128) NOT NULL,
    receiving_account_number VARCHAR(32)  NOT NULL,
    status          VARCHAR(16)  NOT NULL DEFAULT 'awaiting_upload',
    fulfilled       INTEGER      NOT NULL DEFAULT 0,
    fulfilled_by    INTEGER,
    fulfilled_at    DATETIME,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    expires_at      DATETIME     NOT NULL,
    expired_at      DATETIME
);

CREATE TABLE IF NOT EXISTS payment_submissions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id        VARCHAR(40)  NOT NULL,
    user_id         VARCHAR(64)  NOT NULL,
    screenshot_ref  TEXT         NOT NULL,
    exact_hash      VARCHAR(64),
    perceptual_hash VARCHAR(16),
    image_width     INTEGER,
    image_height    INTEGER,
    has_exif        INTEGER,
    extracted_amount INTEGER,
    reference_number VARCHAR(32),
    sender_name     VARCHAR(128),
    receiver_name   VARCHAR(128),
    transaction_time VARCHAR(64),
    ocr_confidence  REAL,
    ocr_text        TEXT,
    fraud_flags     TEXT         NOT NULL DEFAULT '[]',
    fraud_score     INTEGER      NOT NULL DEFAULT 0,
    status          VARCHAR(16)  NOT NULL DEFAULT 'pending',
    validation_errors TEXT       NOT NULL DEFAULT '[]',
    resolved_by     VARCHAR(64),
    resolved_at     DATETIME,
    resolution_reason TEXT,
    resolution_notes TEXT,
    attempts        INTEGER      NOT NULL DEFAULT 0,
    next_attempt_at DATETIME,
    claimed_at      DATETIME,
    last_error      TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS verification_logs (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    submission_id   INTEGER      NOT NULL,
    user_id         VARCHAR(64),
    action          VARCHAR(32)  NOT NULL,
    fraud_score     INTEGER,
    fraud_flags     TEXT,
    actor           VARCHAR(64)  NOT NULL DEFAULT 'system',
    notes           TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS platform_fees (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    bid_id          VARCHAR(64)  NOT NULL UNIQUE,
    order_id        VARCHAR(40)  NOT NULL UNIQUE,
    user_id         VARCHAR(64)  NOT NULL,
    amount          INTEGER      NOT NULL,
    submission_id   INTEGER,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS settlement_events (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id        VARCHAR(40)  NOT NULL UNIQUE,
    event_type      VARCHAR(32)  NOT NULL,
    user_id         VARCHAR(64)  NOT NULL,
    amount          INTEGER      NOT NULL,
    linked_bid_id   VARCHAR(64),
    submission_id   INTEGER,
    notify_status   INTEGER      DEFAULT 0,
    notify_attempts INTEGER      DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    notified_at     DATETIME
);

CREATE TABLE IF NOT EXISTS settlement_event_logs (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id        INTEGER      NOT NULL REFERENCES settlement_events(id),
    attempt         INTEGER      NOT NULL,
    url             TEXT         NOT NULL,
    http_status     INTEGER,
    response_body   TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);
"""

# ── 索引 SQL ──────────────────────────────────────────────

_CREATE_INDEXES = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_system_config_key
    ON system_config(config_key);
CREATE UNIQUE INDEX IF NOT EXISTS idx_wallets_user
    ON wallets(user_id);
CREATE INDEX IF NOT EXISTS idx_wallet_tx_user
    ON wallet_transactions(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_payment_orders_user
    ON payment_orders(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_payment_orders_status
    ON payment_orders(status, expires_at);
CREATE INDEX IF NOT EXISTS idx_submissions_status
    ON payment_submissions(status, next_attempt_at);
CREATE INDEX IF NOT EXISTS idx_submissions_order
    ON payment_submissions(order_id);
CREATE INDEX IF NOT EXISTS idx_submissions_user_created
    ON payment_submissions(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_submissions_exact_hash
    ON payment_submissions(exact_hash);
CREATE INDEX IF NOT EXISTS idx_submissions_created
    ON payment_submissions(created_at);
CREATE INDEX IF NOT EXISTS idx_submissions_reference
    ON payment_submissions(reference_number);
CREATE INDEX IF NOT EXISTS idx_verification_logs_submission
    ON verification_logs(submission_id);
CREATE INDEX IF NOT EXISTS idx_settlement_events_status
    ON settlement_events(notify_status);
CREATE INDEX IF NOT EXISTS idx_settlement_event_logs_event
    ON settlement_event_logs(event_id);
"""


# ── 初始化 ────────────────────────────────────────────────

def init_db() -> None:
    """创建数据库目录、表、索引，并在首次启动时创建默认管理员。"""
    # 确保 data/ 目录存在
    db_dir = Path(DB_PATH).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = get_db()
    try:
        conn.executescript(_CREATE_TABLES)
        conn.executescript(_CREATE_INDEXES)

        # 首次启动：通过环境变量创建默认管理员
        _create_default_admin(conn)

        conn.commit()
    finally:
        conn.close()


def _create_default_admin(conn: sqlite3.Connection) -> None:
    """如果 admin 表为空，则根据环境变量创建默认管理员账号。"""
    row = conn.execute("SELECT COUNT(*) AS cnt FROM admin").fetchone()
    if row["cnt"] > 0:
        return

    username = os.getenv("ADMIN_USERNAME", "admin")
    password = os.getenv("ADMIN_PASSWORD", "admin123")

    password_hash = bcrypt.hashpw(
        password.encode("utf-8"), bcrypt.gensalt()
    ).decode("utf-8")

    conn.execute(
        "INSERT INTO admin (username, password_hash) VALUES (?, ?)",
        (username, password_hash),
    )
