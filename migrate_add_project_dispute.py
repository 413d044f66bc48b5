#!/usr/bin/env python3
"""
Database migration script to add dispute columns to the project table
"""
from app import app, db
from sqlalchemy import text

DISPUTE_COLUMNS = {
    'disputed_at': {'postgres': 'TIMESTAMP', 'sqlite': 'DATETIME'},
    'disputed_by': {'postgres': 'INTEGER REFERENCES "user"(id)', 'sqlite': 'INTEGER REFERENCES user(id)'},
    'dispute_reason': {'postgres': 'TEXT', 'sqlite': 'TEXT'},
}


def existing_columns(is_postgres):
    if is_postgres:
        result = db.session.execute(text(
            "SELECT column_name FROM information_schema.columns WHERE table_name='project'"
        ))
        return {row[0] for row in result.fetchall()}

    result = db.session.execute(text("PRAGMA table_info(project)"))
    return {row[1] for row in result.fetchall()}


def migrate():
    with app.app_context():
        try:
            print("Starting migration...")

            db_uri = app.config['SQLALCHEMY_DATABASE_URI']
            is_postgres = 'postgres' in db_uri.lower()
            if not is_postgres and not db_uri.startswith('sqlite'):
                print("❌ Unknown database type")
                return False

            backend = 'postgres' if is_postgres else 'sqlite'
            present = existing_columns(is_postgres)
            for column, types in DISPUTE_COLUMNS.items():
                if column in present:
                    print(f"⚠️  Column '{column}' already exists. Skipping.")
                    continue
                db.session.execute(text(f'ALTER TABLE project ADD COLUMN {column} {types[backend]}'))
                print(f"✅ Added {column} column to project table")

            db.session.commit()
            print("\n✅ Migration completed successfully!")
            return True

        except Exception as e:
            print(f"❌ Migration failed: {e}")
            db.session.rollback()
            return False


if __name__ == '__main__':
    success = migrate()
    exit(0 if success else 1)
