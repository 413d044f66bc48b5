#!/usr/bin/env python3
"""
Database migration script to add acceptance_key to the project table
The key makes bid acceptance idempotent: a retried request with the same key
returns the original project instead of settling twice.
"""
from app import app, db
from sqlalchemy import text


def column_exists(is_postgres):
    if is_postgres:
        result = db.session.execute(text(
            "SELECT column_name FROM information_schema.columns "
            "WHERE table_name='project' AND column_name='acceptance_key'"
        ))
        return result.fetchone() is not None

    result = db.session.execute(text("PRAGMA table_info(project)"))
    return 'acceptance_key' in [row[1] for row in result.fetchall()]


def migrate():
    with app.app_context():
        try:
            print("Starting migration...")

            db_uri = app.config['SQLALCHEMY_DATABASE_URI']
            is_postgres = 'postgres' in db_uri.lower()
            is_sqlite = db_uri.startswith('sqlite')
            if not is_postgres and not is_sqlite:
                print("❌ Unknown database type")
                return False

            if column_exists(is_postgres):
                print("⚠️  Column 'acceptance_key' already exists. Skipping column creation.")
            else:
                db.session.execute(text('ALTER TABLE project ADD COLUMN acceptance_key VARCHAR(100)'))
                print("✅ Added acceptance_key column to project table")

            # SQLite cannot add a UNIQUE column, so uniqueness comes from an index on both backends
            db.session.execute(text(
                'CREATE UNIQUE INDEX IF NOT EXISTS ix_project_acceptance_key ON project (acceptance_key)'
            ))
            db.session.commit()
            print("✅ Unique index on project.acceptance_key is in place")
            return True

        except Exception as e:
            db.session.rollback()
            print(f"❌ Migration failed: {str(e)}")
            return False


if __name__ == '__main__':
    success = migrate()
    exit(0 if success else 1)
