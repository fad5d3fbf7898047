"""
Bring an EXISTING database up to the SafeProtocol schema.

- Creates compliance_audit / compliance_consent (and documents / signers) if missing
- Adds the identity columns to an existing signers table
- Adds order_ref and location columns to an existing compliance_audit table

For a NEW database: not needed; app startup runs create_all() with all models.
Run once from project root: python scripts/migrate_compliance_tables.py
"""
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from sqlalchemy import inspect, text  # noqa: E402
from app.database import Base, engine  # noqa: E402
from app import models  # noqa: F401,E402

# Columns added after the first release; all nullable or defaulted so existing rows stay valid
ADDED_COLUMNS = {
    "signers": ("identity_verified", "verified_identity", "identity_provider", "verification_method",
                "personal_number_hash", "verification_timestamp"),
    "compliance_audit": ("order_ref", "location_country", "location_city"),
}


def _column_ddl(table_name: str, column_name: str) -> str:
    col = Base.metadata.tables[table_name].columns[column_name]
    ddl = f'ALTER TABLE {table_name} ADD COLUMN {col.name} {col.type.compile(dialect=engine.dialect)}'
    if col.name == "identity_verified":
        ddl += " NOT NULL DEFAULT FALSE"
    return ddl


def main():
    Base.metadata.create_all(bind=engine)

    insp = inspect(engine)
    with engine.begin() as conn:
        for table_name, columns in ADDED_COLUMNS.items():
            existing = {c["name"] for c in insp.get_columns(table_name)}
            for name in columns:
                if name in existing:
                    print(f"  skip (exists): {table_name}.{name}")
                    continue
                conn.execute(text(_column_ddl(table_name, name)))
                print(f"  added: {table_name}.{name}")
        if engine.dialect.name == "postgresql":
            conn.execute(text("CREATE INDEX IF NOT EXISTS ix_compliance_audit_order_ref ON compliance_audit (order_ref)"))
    print("Done.")


if __name__ == "__main__":
    main()
