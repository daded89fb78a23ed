"""Create (or reset) an admin account from the command line.

    python scripts/create_admin.py admin@school.example
    python scripts/create_admin.py admin@school.example --temporary

The password is prompted for and must pass the password policy. With --temporary the
admin has to choose a new password at first login.
"""

import argparse
import getpass
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from utils.passwords import hash_password, password_policy_error
from utils.sql_store import MySQLGradeStore

logging.basicConfig(level=logging.INFO)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create or reset a gradebook admin.")
    parser.add_argument("email")
    parser.add_argument(
        "--temporary",
        action="store_true",
        help="force a password change at first login",
    )
    args = parser.parse_args(argv)

    email = args.email.strip().lower()
    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Repeat password: "):
        print("Passwords do not match.")
        return 1
    error = password_policy_error(password, Config.MIN_PASSWORD_LENGTH)
    if error:
        print(error)
        return 1

    store = MySQLGradeStore()
    existing = store.get_user_by_email(email)
    if existing:
        if existing["role"] != "admin":
            print(f"{email} exists with role {existing['role']}; not changing it.")
            return 1
        store.set_password(existing["id"], hash_password(password), args.temporary)
        store.set_user_status(existing["id"], "active")
        print(f"Password reset for admin {email}.")
        return 0

    user_id = store.create_user(
        email, hash_password(password), "admin", must_change_password=args.temporary
    )
    print(f"Admin {email} created with id {user_id}.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
