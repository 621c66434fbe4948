# scripts/init_database.py

"""
Database initialization script.
Creates the canonical client store, the raw source tables and the unifier
bookkeeping tables (sync_runs, contact_identities, lead_events, merge_conflicts).
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import inspect

from app import app
from unify_app.models import db


def init_database():
    """Create every table that does not exist yet"""
    with app.app_context():
        print("Creating database tables...")
        db.create_all()
        tables = sorted(inspect(db.engine).get_table_names())
        print(f"Database tables ready ({len(tables)}):")
        for table in tables:
            print(f"  - {table}")

        print("\nNext steps:")
        print("  1. Load sample raw records: python scripts/seed_database.py")
        print("  2. Start a worker: flask unifier worker run")
        print("  3. Trigger a run: flask unifier run (or --inline without a worker)")


if __name__ == "__main__":
    init_database()
