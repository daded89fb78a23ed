"""Create all gradebook tables in the configured MySQL database.
Run from the repo root:

    python scripts/init_db.py

Uses the same DB configuration as the app (ENVIRONMENT and LOCAL_DB_* / ONLINE_DB_*).
"""

import logging
import os
import sys

# Ensure we can import the app modules from the parent directory
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from flask import Flask

from utils.db_conn import DatabaseConnection

logging.basicConfig(level=logging.INFO)


def main() -> int:
    app = Flask(__name__)
    db_conn = DatabaseConnection(app)
    if not db_conn.init_database():
        print("Database initialization failed; see the log above.")
        return 1
    print("All tables are in place.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
