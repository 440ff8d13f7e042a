"""
Migration: Add dispatch and flag guards.

For databases created before these guards existed:
1. check_ins.send_attempts / delivery_confirmed_at / last_send_error - dispatch bookkeeping
2. uq_check_in_number_per_introduction - one check-in per (introduction, number)
3. circumvention_flags.invoice_pending_since / invoice_number - invoice claim
4. uq_active_flag_per_introduction - at most one OPEN/INVESTIGATING flag per introduction

Fails on step 2 or 4 if the table already holds duplicates; resolve those first.
"""
from sqlalchemy import create_engine, text
import os

# Use same DB URL pattern as main app
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/placement_guard"
)


def column_exists(conn, table_name: str, column_name: str) -> bool:
    """Check if a column exists on a table."""
    result = conn.execute(text("""
        SELECT EXISTS (
            SELECT FROM information_schema.columns
            WHERE table_name = :table_name AND column_name = :column_name
        )
    """), {"table_name": table_name, "column_name": column_name})
    return result.fetchone()[0]


def index_exists(conn, index_name: str) -> bool:
    """Check if an index (or the index behind a unique constraint) exists."""
    result = conn.execute(text("""
        SELECT EXISTS (
            SELECT FROM pg_indexes WHERE indexname = :index_name
        )
    """), {"index_name": index_name})
    return result.fetchone()[0]


def add_column(conn, table_name: str, column_name: str, definition: str):
    if column_exists(conn, table_name, column_name):
        print(f"{table_name}.{column_name} already exists")
        return
    conn.execute(text(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {definition}"))
    print(f"Added {table_name}.{column_name}")


def run_migration():
    """Add dispatch bookkeeping, invoice claim and uniqueness guards."""
    engine = create_engine(DATABASE_URL)

    with engine.connect() as conn:
        # =================================================================
        # CHECK-IN DISPATCH
        # =================================================================
        add_column(conn, "check_ins", "send_attempts", "INTEGER NOT NULL DEFAULT 0")
        add_column(conn, "check_ins", "delivery_confirmed_at", "TIMESTAMP")
        add_column(conn, "check_ins", "last_send_error", "TEXT")

        if index_exists(conn, "uq_check_in_number_per_introduction"):
            print("uq_check_in_number_per_introduction already exists")
        else:
            conn.execute(text("""
                ALTER TABLE check_ins
                ADD CONSTRAINT uq_check_in_number_per_introduction
                UNIQUE (introduction_id, check_in_number)
            """))
            print("Created uq_check_in_number_per_introduction")

        # =================================================================
        # INVOICE CLAIM
        # =================================================================
        add_column(conn, "circumvention_flags", "invoice_pending_since", "TIMESTAMP")
        add_column(conn, "circumvention_flags", "invoice_number", "VARCHAR(64)")

        # =================================================================
        # ONE ACTIVE FLAG PER INTRODUCTION
        # =================================================================
        if index_exists(conn, "uq_active_flag_per_introduction"):
            print("uq_active_flag_per_introduction already exists")
        else:
            conn.execute(text("""
                CREATE UNIQUE INDEX uq_active_flag_per_introduction
                ON circumvention_flags (introduction_id)
                WHERE status IN ('OPEN', 'INVESTIGATING')
            """))
            print("Created uq_active_flag_per_introduction")

        conn.commit()
        print("\nDispatch and flag guard migration completed successfully!")


if __name__ == "__main__":
    run_migration()
