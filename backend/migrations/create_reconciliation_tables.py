"""
Database Migration: Create Reconciliation Tables

Creates the normalized record tables the engine reads and updates, plus
the lease table that keeps applying runs single-writer.

Usage:
    python -m migrations.create_reconciliation_tables
    python -m migrations.create_reconciliation_tables --drop
"""

import asyncio

from sqlalchemy import text
from database.connection import get_engine


SQL_STATEMENTS = [
    # Payment-side records (gateways and bank feeds)
    """
    CREATE TABLE IF NOT EXISTS public.transaction_records (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        source VARCHAR(50) NOT NULL,
        external_id VARCHAR(255),
        date DATE NOT NULL,
        amount NUMERIC(14, 2) NOT NULL,
        currency_code VARCHAR(3) NOT NULL DEFAULT 'EUR',
        description TEXT NOT NULL DEFAULT '',
        reconciled BOOLEAN NOT NULL DEFAULT false,

        -- Source fields plus match provenance
        custom_data JSONB NOT NULL DEFAULT '{}'::jsonb,

        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),

        CONSTRAINT transaction_records_source_external_unique UNIQUE (source, external_id)
    )
    """,

    # Billing-side records
    """
    CREATE TABLE IF NOT EXISTS public.invoice_records (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        invoice_number VARCHAR(100),
        customer_name VARCHAR(255),
        customer_email VARCHAR(255),
        order_id VARCHAR(255),
        total_amount NUMERIC(14, 2) NOT NULL DEFAULT 0,
        currency_code VARCHAR(3) NOT NULL DEFAULT 'EUR',
        financial_account_code VARCHAR(50),
        invoice_date DATE,
        status VARCHAR(30) NOT NULL DEFAULT 'pending',

        -- Reconciliation state
        reconciled BOOLEAN NOT NULL DEFAULT false,
        reconciled_with VARCHAR(255),
        reconciled_at TIMESTAMPTZ,
        reconciliation_type VARCHAR(50),
        payment_reference VARCHAR(255),

        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # Single-writer lease for applying runs
    """
    CREATE TABLE IF NOT EXISTS public.reconciliation_leases (
        name VARCHAR(100) PRIMARY KEY,
        holder VARCHAR(100) NOT NULL,
        acquired_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,

    # Indexes for transaction_records
    "CREATE INDEX IF NOT EXISTS idx_txn_records_source ON public.transaction_records(source)",
    "CREATE INDEX IF NOT EXISTS idx_txn_records_unreconciled ON public.transaction_records(source, date) WHERE reconciled = false",
    "CREATE INDEX IF NOT EXISTS idx_txn_records_custom_data ON public.transaction_records USING GIN (custom_data)",

    # Indexes for invoice_records
    "CREATE INDEX IF NOT EXISTS idx_invoice_records_order ON public.invoice_records(order_id)",
    "CREATE INDEX IF NOT EXISTS idx_invoice_records_email ON public.invoice_records(lower(customer_email))",
    "CREATE INDEX IF NOT EXISTS idx_invoice_records_unreconciled ON public.invoice_records(invoice_date) WHERE reconciled = false",
]

DROP_STATEMENTS = [
    "DROP TABLE IF EXISTS public.reconciliation_leases",
    "DROP TABLE IF EXISTS public.invoice_records",
    "DROP TABLE IF EXISTS public.transaction_records",
]


async def _run(statements, label: str):
    print(f"{label}...")

    async with get_engine().begin() as conn:
        for i, sql in enumerate(statements):
            try:
                await conn.execute(text(sql))
                print(f"  ✓ Statement {i+1}/{len(statements)} executed")
            except Exception as e:
                if "already exists" in str(e).lower():
                    print(f"  ✓ Statement {i+1}/{len(statements)} (already exists)")
                else:
                    print(f"  ✗ Statement {i+1}/{len(statements)} failed: {e}")
                    raise


async def create_tables():
    """Create the reconciliation tables."""
    await _run(SQL_STATEMENTS, "Creating reconciliation tables")
    print("\n✅ Reconciliation tables created successfully!")


async def drop_tables():
    """Drop the reconciliation tables."""
    await _run(DROP_STATEMENTS, "Dropping reconciliation tables")
    print("\n✅ Reconciliation tables dropped")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Manage reconciliation tables")
    parser.add_argument("--drop", action="store_true", help="Drop tables instead of create")
    args = parser.parse_args()

    if args.drop:
        asyncio.run(drop_tables())
    else:
        asyncio.run(create_tables())
