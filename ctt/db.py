# -*- coding: utf-8 -*-
"""
Local database

SQLite connection factory and the schema of the business tables. The sync
engine tracks these tables; the CRUD handlers that write them live elsewhere.
"""

import os
import sqlite3


def connect(db_path: str) -> sqlite3.Connection:
    """Open a connection to ``db_path`` with the application pragmas."""
    directory = os.path.dirname(os.path.abspath(db_path))
    os.makedirs(directory, exist_ok=True)

    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    pragmas = [
        "PRAGMA journal_mode=WAL",
        "PRAGMA synchronous=NORMAL",
        "PRAGMA temp_store=MEMORY",
        "PRAGMA busy_timeout=30000",
    ]
    for pragma in pragmas:
        try:
            conn.execute(pragma)
        except sqlite3.DatabaseError:
            continue
    return conn


# Tables in dependency order (parents before children).
SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        display_name TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'basic',
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS clients (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        account_holder TEXT,
        account_holder_id TEXT REFERENCES users(id),
        phone TEXT,
        mailing_address TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        notes TEXT,
        default_hourly_rate REAL,
        invoice_payable_to TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS job_types (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        description TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rate_tiers (
        id TEXT PRIMARY KEY,
        amount REAL NOT NULL,
        label TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS projects (
        id TEXT PRIMARY KEY,
        client_id TEXT NOT NULL REFERENCES clients(id),
        name TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'in_progress',
        assigned_to TEXT,
        note TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS client_chat_logs (
        id TEXT PRIMARY KEY,
        client_id TEXT NOT NULL UNIQUE REFERENCES clients(id),
        content TEXT NOT NULL,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS invoices (
        id TEXT PRIMARY KEY,
        client_id TEXT NOT NULL REFERENCES clients(id),
        invoice_number TEXT NOT NULL UNIQUE,
        date_issued TEXT NOT NULL,
        date_due TEXT,
        status TEXT NOT NULL DEFAULT 'draft',
        notes TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS time_entries (
        id TEXT PRIMARY KEY,
        client_id TEXT NOT NULL REFERENCES clients(id),
        tech_id TEXT NOT NULL REFERENCES users(id),
        job_type_id TEXT NOT NULL REFERENCES job_types(id),
        rate_tier_id TEXT NOT NULL REFERENCES rate_tiers(id),
        date TEXT NOT NULL,
        hours REAL NOT NULL,
        notes TEXT,
        group_id TEXT,
        is_billed INTEGER NOT NULL DEFAULT 0,
        is_paid INTEGER NOT NULL DEFAULT 0,
        invoice_id TEXT REFERENCES invoices(id),
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS invoice_line_items (
        id TEXT PRIMARY KEY,
        invoice_id TEXT NOT NULL REFERENCES invoices(id),
        time_entry_id TEXT REFERENCES time_entries(id),
        description TEXT NOT NULL,
        hours REAL NOT NULL,
        rate REAL NOT NULL,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        id TEXT PRIMARY KEY,
        invoice_id TEXT NOT NULL REFERENCES invoices(id),
        amount REAL NOT NULL,
        date_paid TEXT NOT NULL,
        method TEXT,
        notes TEXT,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS partner_splits (
        id TEXT PRIMARY KEY,
        partner_id TEXT NOT NULL REFERENCES users(id),
        split_percent REAL NOT NULL,
        effective_from TEXT NOT NULL,
        effective_to TEXT,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS partner_payments (
        id TEXT PRIMARY KEY,
        from_partner_id TEXT NOT NULL REFERENCES users(id),
        to_partner_id TEXT NOT NULL REFERENCES users(id),
        amount REAL NOT NULL,
        date_paid TEXT NOT NULL,
        notes TEXT,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT
    )
    """,
]


def initialize_database(db_path: str):
    """Create the business tables if they do not exist."""
    conn = connect(db_path)
    try:
        cur = conn.cursor()
        for statement in SCHEMA_STATEMENTS:
            cur.execute(statement)
        conn.commit()
    finally:
        conn.close()
