#!/usr/bin/env python3
"""Attach a registry role to a user (idempotent).

Usage:
  python scripts/assign_role.py --email jane@example.com --role Approver
"""

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.dms.models import Role, User
from app.dms.rbac import KNOWN_ROLES
from scripts._db_utils import database_url_from_env, script_session


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--email", required=True, help="User email")
    parser.add_argument("--role", required=True, choices=KNOWN_ROLES, help="Role key to attach")
    args = parser.parse_args()

    with script_session(database_url_from_env()) as s:
        user = s.query(User).filter(User.email.ilike(args.email)).one_or_none()
        if not user:
            print(f"User not found: {args.email}")
            return
        role = s.query(Role).filter(Role.key == args.role).one_or_none()
        if not role:
            print(f"Role {args.role} not found. Run python scripts/init_db.py first.")
            return
        if role in (user.roles or []):
            print(f"User already has {args.role}: {args.email}")
            return
        user.roles.append(role)
        print(f"{args.role} attached to {args.email}")


if __name__ == "__main__":
    main()
