"""
Apply database migrations without starting the web server.

Usage:
  python migrate.py            # upgrade to head
  python migrate.py <revision> # upgrade to a given revision
"""

import os
import sys

from alembic import command
from alembic.config import Config
from dotenv import load_dotenv

MIGRATIONS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'migrations')


def alembic_config():
    cfg = Config()
    cfg.set_main_option('script_location', MIGRATIONS_DIR)
    # Revisions import the schema from db.py at the project root.
    cfg.set_main_option('prepend_sys_path', os.path.dirname(MIGRATIONS_DIR))
    return cfg


def main(argv=None):
    load_dotenv()
    argv = sys.argv[1:] if argv is None else argv
    revision = argv[0] if argv else 'head'
    if not (os.environ.get('DATABASE_URL') or '').strip():
        print("✗ DATABASE_URL not found. Set it in .env", file=sys.stderr)
        return 1

    try:
        print("Applying database migrations...")
        command.upgrade(alembic_config(), revision)
        print("✓ Migrations completed successfully.")
    except Exception as e:
        print(f"✗ Migration failed: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
