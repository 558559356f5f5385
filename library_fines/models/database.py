"""Database initialization and connection management.

This module provides database connection management and schema
initialization for the fine, payment and reconciliation tables.
"""
import os
import sqlite3

from flask import current_app, g


def get_db() -> sqlite3.Connection:
    """Get database connection from Flask application context.

    Returns:
        SQLite database connection with Row factory enabled.
    """
    if 'db' not in g:
        database_path = current_app.config['DATABASE_PATH']
        directory = os.path.dirname(database_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        g.db = sqlite3.connect(
            database_path,
            detect_types=sqlite3.PARSE_DECLTYPES,
            timeout=30
        )
        g.db.row_factory = sqlite3.Row
    return g.db


def close_db(e=None):
    """Close database connection"""
    db = g.pop('db', None)
    if db is not None:
        db.close()


def init_db():
    """Initialize database with schema"""
    db = get_db()

    # Users are owned by the authentication module; only the columns
    # needed for fine classification are required here.
    db.execute('''
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            email TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            role TEXT NOT NULL DEFAULT 'user',
            classification TEXT,
            member_since TEXT NOT NULL
        )
    ''')

    db.execute('''
        CREATE TABLE IF NOT EXISTS books (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            author TEXT NOT NULL DEFAULT '',
            category TEXT NOT NULL DEFAULT 'standard',
            price REAL DEFAULT 0.0
        )
    ''')

    db.execute('''
        CREATE TABLE IF NOT EXISTS borrows (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            book_id TEXT NOT NULL,
            name TEXT NOT NULL DEFAULT '',
            email TEXT NOT NULL DEFAULT '',
            borrow_date TEXT NOT NULL,
            due_date TEXT,
            return_date TEXT,
            fine REAL NOT NULL DEFAULT 0.0 CHECK (fine >= 0),
            fine_audit_trail TEXT NOT NULL DEFAULT '[]',
            payments TEXT NOT NULL DEFAULT '[]',
            payment_status TEXT NOT NULL DEFAULT 'none',
            gateway_order_id TEXT,
            gateway_payment_id TEXT,
            notified INTEGER DEFAULT 0,
            last_notified_at TEXT,
            version INTEGER NOT NULL DEFAULT 0,
            FOREIGN KEY (user_id) REFERENCES users (id),
            FOREIGN KEY (book_id) REFERENCES books (id)
        )
    ''')
    db.execute('CREATE INDEX IF NOT EXISTS idx_borrows_user ON borrows (user_id)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_borrows_due ON borrows (due_date, return_date)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_borrows_order ON borrows (gateway_order_id)')

    db.execute('''
        CREATE TABLE IF NOT EXISTS payment_orders (
            id TEXT PRIMARY KEY,
            borrow_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            gateway_order_id TEXT UNIQUE NOT NULL,
            amount REAL NOT NULL,
            currency TEXT NOT NULL DEFAULT 'INR',
            status TEXT NOT NULL DEFAULT 'created',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            expires_at TEXT,
            version INTEGER NOT NULL DEFAULT 0,
            FOREIGN KEY (borrow_id) REFERENCES borrows (id),
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
    ''')
    db.execute('CREATE INDEX IF NOT EXISTS idx_orders_borrow ON payment_orders (borrow_id)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_orders_status ON payment_orders (status, created_at)')

    db.execute('''
        CREATE TABLE IF NOT EXISTS system_config (
            id INTEGER PRIMARY KEY,
            config_data TEXT NOT NULL
        )
    ''')

    db.execute('''
        CREATE TABLE IF NOT EXISTS system_logs (
            id TEXT PRIMARY KEY,
            timestamp TEXT NOT NULL,
            action TEXT NOT NULL,
            details TEXT,
            log_type TEXT DEFAULT 'info',
            user_id TEXT
        )
    ''')

    db.commit()
