import sys
from pathlib import Path
import os

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.dcms.models import Department, User, UserRole
from scripts._db_utils import script_session


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the admin user (and an optional default department) idempotently.
    Does NOT overwrite an existing admin user's password or role.
    """
    admin_username = (os.environ.get("ADMIN_USERNAME") or "admin").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    admin_full_name = (os.environ.get("ADMIN_FULL_NAME") or "Administrator").strip()
    default_department = (os.environ.get("DEFAULT_DEPARTMENT") or "").strip()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///dcms.db").strip()

    # Direct engine/session so this can run in release without building the Flask app.
    with script_session(db_url) as s:
        dept = None
        if default_department:
            dept = s.query(Department).filter(Department.name == default_department).one_or_none()
            if not dept:
                dept = Department(name=default_department)
                s.add(dept)
                s.flush()

        user = s.query(User).filter(User.username == admin_username).one_or_none()
        if not user:
            user = User(
                username=admin_username,
                full_name=admin_full_name,
                password_hash=generate_password_hash(admin_password),
                role=UserRole.ADMIN,
                master_copy_access=True,
                department_id=dept.id if dept else None,
                is_active=True,
            )
            s.add(user)

    print("Initialized database (seed_only).")
    print(f"Admin username: {admin_username}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
