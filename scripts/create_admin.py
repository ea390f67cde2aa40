#!/usr/bin/env python3
from __future__ import annotations

import argparse
import getpass
import os
from pathlib import Path

from salon_admin.auth_store import AdminUserExistsError, SqlAlchemyAdminRepository
from salon_admin.database import get_database


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create a salon admin or manager account directly in the configured database."
    )
    parser.add_argument("username", help="Login name (3-50 characters).")
    parser.add_argument(
        "--role",
        choices=("admin", "manager"),
        default="admin",
        help="Account role. Only admins may delete clients or create further accounts.",
    )
    parser.add_argument(
        "--password",
        default=None,
        help="Account password. Defaults to ADMIN_PASSWORD from environment/.env, then an interactive prompt.",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy URL. Defaults to DATABASE_URL from environment/.env.",
    )
    return parser.parse_args()


def main() -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    args = parse_args()

    database_url = (args.database_url or os.getenv("DATABASE_URL", "")).strip()
    if not database_url:
        raise SystemExit("DATABASE_URL is required (set .env or pass --database-url)")

    password = args.password or os.getenv("ADMIN_PASSWORD", "")
    if not password:
        password = getpass.getpass("Password: ")
        if password != getpass.getpass("Repeat password: "):
            raise SystemExit("passwords do not match")

    repository = SqlAlchemyAdminRepository(get_database(database_url))
    try:
        principal = repository.create_admin(args.username, password, role=args.role)
    except AdminUserExistsError as exc:
        raise SystemExit(str(exc)) from exc
    except ValueError as exc:
        raise SystemExit(f"invalid account: {exc}") from exc

    print(f"Created {principal.role} account {principal.username} ({principal.admin_id})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
