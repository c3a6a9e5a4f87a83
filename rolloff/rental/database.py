"""Database utilities for the roll-off rental platform."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def dict_factory(cursor: sqlite3.Cursor, row: sqlite3.Row) -> dict:
    """Return rows as dictionaries rather than tuples."""

    return {description[0]: row[idx] for idx, description in enumerate(cursor.description)}


def get_connection(path: str | Path) -> sqlite3.Connection:
    """Return a SQLite connection with sensible defaults.

    The connection runs in autocommit mode; multi-statement units of work go
    through :func:`transaction` so that they take the write lock up front.
    """

    conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False, timeout=10)
    conn.row_factory = dict_factory
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside ``BEGIN IMMEDIATE`` and commit or roll back.

    Taking the reserved lock at ``BEGIN`` serialises concurrent writers, so a
    read followed by a conditional write inside the block cannot interleave
    with another writer.
    """

    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def initialize_database(conn: sqlite3.Connection) -> None:
    """Create the database schema if it does not yet exist."""

    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS customers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            business_id TEXT NOT NULL,
            name TEXT NOT NULL,
            email TEXT NOT NULL,
            phone TEXT,
            tax_exempt INTEGER DEFAULT 0,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS addresses (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            business_id TEXT NOT NULL,
            customer_id INTEGER,
            full_address TEXT NOT NULL,
            street TEXT,
            city TEXT,
            state TEXT,
            zip TEXT,
            lat REAL,
            lng REAL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(customer_id) REFERENCES customers(id)
        );

        CREATE TABLE IF NOT EXISTS pricing_rules (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            business_id TEXT NOT NULL,
            waste_type TEXT NOT NULL,
            dumpster_size INTEGER NOT NULL,
            base_price_cents INTEGER NOT NULL,
            delivery_fee_cents INTEGER NOT NULL DEFAULT 0,
            haul_fee_cents INTEGER NOT NULL DEFAULT 0,
            included_days INTEGER NOT NULL,
            extra_day_fee_cents INTEGER NOT NULL DEFAULT 0,
            included_tons TEXT NOT NULL DEFAULT '0',
            overage_per_ton_cents INTEGER NOT NULL DEFAULT 0,
            public_notes TEXT,
            active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE UNIQUE INDEX IF NOT EXISTS pricing_rules_one_active
            ON pricing_rules(business_id, waste_type, dumpster_size)
            WHERE active = 1;

        CREATE TABLE IF NOT EXISTS quotes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            business_id TEXT NOT NULL,
            customer_id INTEGER,
            address_id INTEGER,
            waste_type TEXT,
            dumpster_size INTEGER,
            dropoff_date TEXT,
            pickup_date TEXT,
            status TEXT NOT NULL DEFAULT 'draft',
            pricing_snapshot TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(customer_id) REFERENCES customers(id),
            FOREIGN KEY(address_id) REFERENCES addresses(id)
        );

        CREATE TABLE IF NOT EXISTS quote_line_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            quote_id INTEGER NOT NULL,
            label TEXT NOT NULL,
            amount_cents INTEGER NOT NULL,
            line_type TEXT NOT NULL,
            sort_order INTEGER NOT NULL,
            taxable INTEGER NOT NULL DEFAULT 0,
            FOREIGN KEY(quote_id) REFERENCES quotes(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS carts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            business_id TEXT NOT NULL,
            customer_id INTEGER NOT NULL,
            status TEXT NOT NULL DEFAULT 'active',
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(customer_id) REFERENCES customers(id)
        );

        CREATE UNIQUE INDEX IF NOT EXISTS carts_one_active
            ON carts(business_id, customer_id)
            WHERE status = 'active';

        CREATE TABLE IF NOT EXISTS cart_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            cart_id INTEGER NOT NULL,
            quote_id INTEGER NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(cart_id, quote_id),
            FOREIGN KEY(cart_id) REFERENCES carts(id) ON DELETE CASCADE,
            FOREIGN KEY(quote_id) REFERENCES quotes(id)
        );

        CREATE TABLE IF NOT EXISTS booking_requests (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            business_id TEXT NOT NULL,
            customer_id INTEGER NOT NULL,
            quote_id INTEGER NOT NULL UNIQUE,
            status TEXT NOT NULL DEFAULT 'pending',
            customer_inputs TEXT,
            decline_reason TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(customer_id) REFERENCES customers(id),
            FOREIGN KEY(quote_id) REFERENCES quotes(id)
        );

        CREATE TABLE IF NOT EXISTS invoices (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            business_id TEXT NOT NULL,
            invoice_number TEXT NOT NULL,
            customer_id INTEGER NOT NULL,
            booking_request_id INTEGER UNIQUE,
            subtotal_cents INTEGER NOT NULL,
            total_cents INTEGER NOT NULL,
            status TEXT NOT NULL DEFAULT 'unpaid',
            booking_id INTEGER,
            payment_provider_payment_id TEXT,
            payment_session_id TEXT,
            issued_at TEXT NOT NULL,
            paid_at TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(customer_id) REFERENCES customers(id),
            FOREIGN KEY(booking_request_id) REFERENCES booking_requests(id),
            FOREIGN KEY(booking_id) REFERENCES bookings(id)
        );

        CREATE UNIQUE INDEX IF NOT EXISTS invoices_number_per_business
            ON invoices(business_id, invoice_number);

        CREATE TABLE IF NOT EXISTS invoice_line_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            invoice_id INTEGER NOT NULL,
            label TEXT NOT NULL,
            quantity INTEGER NOT NULL DEFAULT 1,
            unit_price_cents INTEGER NOT NULL,
            amount_cents INTEGER NOT NULL,
            line_type TEXT NOT NULL,
            sort_order INTEGER NOT NULL,
            taxable INTEGER NOT NULL DEFAULT 0,
            FOREIGN KEY(invoice_id) REFERENCES invoices(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS payments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            invoice_id INTEGER NOT NULL,
            provider_payment_id TEXT NOT NULL UNIQUE,
            amount_cents INTEGER NOT NULL,
            status TEXT NOT NULL DEFAULT 'succeeded',
            source TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(invoice_id) REFERENCES invoices(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS dumpsters (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            business_id TEXT NOT NULL,
            unit_number TEXT NOT NULL,
            size INTEGER NOT NULL,
            status TEXT NOT NULL DEFAULT 'available',
            notes TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(business_id, unit_number)
        );

        CREATE TABLE IF NOT EXISTS bookings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            business_id TEXT NOT NULL,
            booking_request_id INTEGER NOT NULL UNIQUE,
            invoice_id INTEGER NOT NULL UNIQUE,
            customer_id INTEGER NOT NULL,
            address_id INTEGER,
            dumpster_id INTEGER,
            status TEXT NOT NULL DEFAULT 'confirmed',
            dropoff_scheduled_on TEXT,
            pickup_due_on TEXT,
            dropped_at TEXT,
            picked_up_at TEXT,
            pricing_snapshot TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(booking_request_id) REFERENCES booking_requests(id),
            FOREIGN KEY(invoice_id) REFERENCES invoices(id),
            FOREIGN KEY(customer_id) REFERENCES customers(id),
            FOREIGN KEY(address_id) REFERENCES addresses(id),
            FOREIGN KEY(dumpster_id) REFERENCES dumpsters(id)
        );

        CREATE TABLE IF NOT EXISTS dump_tickets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            booking_id INTEGER NOT NULL,
            facility TEXT NOT NULL,
            ticket_number TEXT NOT NULL,
            net_tons TEXT NOT NULL,
            ticket_datetime TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(booking_id) REFERENCES bookings(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS adjustments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            business_id TEXT NOT NULL,
            booking_id INTEGER NOT NULL,
            customer_id INTEGER NOT NULL,
            kind TEXT NOT NULL,
            amount_cents INTEGER NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            notes TEXT,
            metadata TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(booking_id) REFERENCES bookings(id),
            FOREIGN KEY(customer_id) REFERENCES customers(id)
        );

        CREATE TABLE IF NOT EXISTS notifications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            business_id TEXT NOT NULL,
            recipient TEXT NOT NULL,
            subject TEXT NOT NULL,
            content TEXT NOT NULL,
            attachments TEXT,
            status TEXT DEFAULT 'queued',
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
        """
    )

    set_metadata(conn, "schema_version", SCHEMA_VERSION)


def set_metadata(conn: sqlite3.Connection, key: str, value: int | str | dict | list) -> None:
    if isinstance(value, (dict, list)):
        value = json.dumps(value)
    conn.execute(
        "INSERT INTO metadata(key, value) VALUES (?, ?)\n         ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, str(value)),
    )


def get_metadata(conn: sqlite3.Connection, key: str, default: str | None = None) -> str | None:
    row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else default
