#!/usr/bin/env python3
"""
Comfy Inventory Database Initialization
=======================================

Initialize the inventory database with proper schema and default settings.
"""

import argparse
import sys
from pathlib import Path
from typing import Optional

from .database import initialize_database, default_database_url


def check_database_exists(database_url: str) -> bool:
    """Check if the database file exists (for SQLite)."""
    if database_url.startswith('sqlite:///'):
        db_path = database_url.replace('sqlite:///', '')
        return Path(db_path).exists()
    return True  # For other databases, assume they exist


def initialize_fresh_database(database_url: Optional[str] = None, force: bool = False) -> bool:
    """Initialize a fresh database with schema and default data."""
    final_db_url = database_url or default_database_url()

    if not force and check_database_exists(final_db_url):
        print(f"⚠️ Database already exists: {final_db_url}")
        print("   Use --force to recreate or --status to inspect it")
        return False

    if force:
        print("🗑️ Force mode: Recreating database...")
        # Remove existing SQLite database and its WAL sidecars
        if final_db_url.startswith('sqlite:///'):
            db_path = Path(final_db_url.replace('sqlite:///', ''))
            for candidate in (db_path, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")):
                if candidate.exists():
                    candidate.unlink()
                    print(f"   Removed existing file: {candidate}")

    print(f"🚀 Initializing inventory database: {final_db_url}")

    try:
        db_manager = initialize_database(final_db_url, create_tables=True)
        stats = db_manager.get_inventory_stats()
        print("✅ Database initialized successfully!")
        print(f"📊 Database ready - {stats['total_models']} models, {stats['total_workflows']} workflows, {stats['total_tasks']} tasks")
        db_manager.close()
        return True

    except Exception as e:
        print(f"❌ Database initialization failed: {e}")
        return False


def check_database_status(database_url: Optional[str] = None) -> bool:
    """Check the current status of the database."""
    final_db_url = database_url or default_database_url()

    print(f"🔍 Checking database status: {final_db_url}")

    if not check_database_exists(final_db_url):
        print("❌ Database does not exist")
        print("   Use --init to create a new database")
        return False

    try:
        db_manager = initialize_database(final_db_url, create_tables=False)
        stats = db_manager.get_inventory_stats()

        print("✅ Database is accessible")
        print(f"📊 Statistics:")
        print(f"   Models: {stats['total_models']}")
        print(f"   Workflows: {stats['total_workflows']}")
        print(f"   Dependencies: {stats['total_dependencies']}")
        print(f"   Tasks: {stats['total_tasks']}")
        print(f"   Downloads: {stats['total_downloads']}")

        if stats['workflows_by_status']:
            print(f"   Workflows by status:")
            for status, count in stats['workflows_by_status'].items():
                print(f"     {status}: {count}")

        db_manager.close()
        return True

    except Exception as e:
        print(f"❌ Database access failed: {e}")
        print("   The database may be corrupted or incompatible")
        return False


def main(argv=None):
    """Main CLI interface for database initialization."""
    parser = argparse.ArgumentParser(
        description="Initialize the Comfy Inventory database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Initialize new database (SQLite)
  python -m database --init

  # Initialize with custom database URL
  python -m database --init --database "sqlite:////srv/inventory/inventory.db"

  # Force recreate existing database
  python -m database --init --force

  # Check database status
  python -m database --status
        """
    )

    parser.add_argument('--init', action='store_true',
                       help='Initialize a new database')
    parser.add_argument('--status', action='store_true',
                       help='Check database status and statistics')
    parser.add_argument('--database', '--db',
                       help='Database URL (default: sqlite:///data/inventory.db)')
    parser.add_argument('--force', action='store_true',
                       help='Force recreate database if it exists')

    args = parser.parse_args(argv)

    if not any([args.init, args.status]):
        parser.error("Must specify one of: --init or --status")

    if args.init and args.status:
        parser.error("Can only specify one operation at a time")

    if args.init:
        success = initialize_fresh_database(args.database, args.force)
    else:
        success = check_database_status(args.database)

    if success:
        print("\n🎉 Operation completed successfully!")
        return 0
    else:
        print("\n💥 Operation failed!")
        return 1


if __name__ == '__main__':
    sys.exit(main())
