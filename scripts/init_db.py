import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.dms.models import Role, User
from app.dms.rbac import ADMIN, APPROVER, AUTHOR, QHSE
from scripts._db_utils import database_url_from_env, script_session

ROLE_NAMES = {
    ADMIN: "Administrator",
    QHSE: "QHSE (publisher)",
    APPROVER: "Approver",
    AUTHOR: "Author",
}


def ensure_roles(s) -> dict[str, Role]:
    roles: dict[str, Role] = {}
    for key, name in ROLE_NAMES.items():
        r = s.query(Role).filter(Role.key == key).one_or_none()
        if not r:
            r = Role(key=key, name=name)
            s.add(r)
        roles[key] = r
    return roles


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the four registry roles and an admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or database_url_from_env()).strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        roles = ensure_roles(s)

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                display_name="Administrator",
                password_hash=generate_password_hash(admin_password),
                is_active=True,
            )
            s.add(user)
        if roles[ADMIN] not in user.roles:
            user.roles.append(roles[ADMIN])

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
