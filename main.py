#!/usr/bin/env python3
"""
Identity service -- administrative command line.

Usage:
  python main.py seed
  python main.py create-user alice --password 's3cret-pass' --role SUPER_ADMIN
  python main.py create-user bob --email bob@example.com
  python main.py serve --host 0.0.0.0 --port 8000

Commands:
  seed         Create the default permissions and the SUPER_ADMIN system role,
               then give that role to the user named 'admin' (or the first user).
               Safe to run repeatedly.
  create-user  Create a local user. Without --password the account can only
               sign in through federated login.
  serve        Run the HTTP API with uvicorn.

Configuration comes from the environment / .env (see core/config.py).
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from auth.credentials import MAX_PASSWORD_BYTES, hash_password, password_fits
from auth.models import Permission, Role, User
from auth.store import IdentityStore
from core.config import get_settings

ADMIN_ROLE_CODE = "SUPER_ADMIN"

# (code, module, action, name)
DEFAULT_PERMISSIONS: list[tuple[str, str, str, str]] = [
    ("organization.view", "organization", "view", "View Organization"),
    ("organization.create", "organization", "create", "Create Organization Units"),
    ("organization.update", "organization", "update", "Update Organization Units"),
    ("organization.delete", "organization", "delete", "Delete Organization Units"),
    ("users.view", "users", "view", "View Users"),
    ("users.manage", "users", "manage", "Manage Users"),
    ("roles.view", "roles", "view", "View Roles"),
    ("roles.manage", "roles", "manage", "Manage Roles and Permissions"),
]


def seed_defaults(store: IdentityStore) -> tuple[int, str | None]:
    """Bootstrap permissions and the SUPER_ADMIN role. Idempotent.

    Returns (admin role id, username that received the role or None when the
    store has no users yet).
    """
    permission_ids = [
        store.upsert_permission(Permission(code=code, module=module, action=action, name=name))
        for code, module, action, name in DEFAULT_PERMISSIONS
    ]

    role = store.get_role_by_code(ADMIN_ROLE_CODE)
    if role is None:
        role_id = store.create_role(Role(code=ADMIN_ROLE_CODE, name="Super Admin", level=0, is_system=True))
    else:
        role_id = role.id

    granted = {g.permission_id for g in store.list_role_permissions(role_id)}
    for pid in permission_ids:
        if pid not in granted:
            store.assign_permission(role_id, pid)

    target = store.get_user_by_username("admin")
    if target is None:
        users = store.list_users()
        target = users[0] if users else None
    if target is None:
        return role_id, None
    store.update_user(target.id, role_id=role_id)
    return role_id, target.username


def _cmd_seed(args: argparse.Namespace) -> int:
    store = IdentityStore(get_settings().database_url)
    try:
        role_id, username = seed_defaults(store)
    finally:
        store.close()
    print(f"  {len(DEFAULT_PERMISSIONS)} permissions ensured; {ADMIN_ROLE_CODE} role id={role_id}.")
    if username is None:
        print("  [!] No users yet. Create one, then run seed again to grant the admin role.")
    else:
        print(f"  {ADMIN_ROLE_CODE} assigned to '{username}'.")
    return 0


def _cmd_create_user(args: argparse.Namespace) -> int:
    password = args.password
    if password is None and not args.no_password:
        password = getpass.getpass("Password: ")
    if password is not None and len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        return 1
    if password is not None and not password_fits(password):
        print(f"  [!] Password must be at most {MAX_PASSWORD_BYTES} bytes.")
        return 1

    store = IdentityStore(get_settings().database_url)
    try:
        role_id = None
        if args.role:
            role = store.get_role_by_code(args.role)
            if role is None:
                print(f"  [!] Unknown role '{args.role}'. Run 'seed' first or create the role.")
                return 1
            role_id = role.id
        try:
            user_id = store.create_user(
                User(
                    username=args.username,
                    full_name=args.full_name,
                    email=args.email,
                    hashed_password=hash_password(password) if password else None,
                    role_id=role_id,
                )
            )
        except IntegrityError:
            print(f"  [!] A user with username '{args.username}' or that email already exists.")
            return 1
    finally:
        store.close()
    print(f"  Created user '{args.username}' (id={user_id}).")
    return 0


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="identity-service",
        description="Administration commands for the identity service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py seed
  python main.py create-user admin --password 'change-me-now' --role SUPER_ADMIN
  DATABASE_URL=sqlite:///./dev.db python main.py serve --reload
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_seed = sub.add_parser("seed", help="Create default permissions and the SUPER_ADMIN role")
    p_seed.set_defaults(func=_cmd_seed)

    p_user = sub.add_parser("create-user", help="Create a local user")
    p_user.add_argument("username")
    p_user.add_argument("--password", default=None, help="Prompted for when omitted")
    p_user.add_argument("--no-password", action="store_true", help="Federated-only account; skip the prompt")
    p_user.add_argument("--email", default=None)
    p_user.add_argument("--full-name", default="", dest="full_name")
    p_user.add_argument("--role", default=None, metavar="CODE", help="Role code, e.g. SUPER_ADMIN")
    p_user.set_defaults(func=_cmd_create_user)

    p_serve = sub.add_parser("serve", help="Run the HTTP API")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--reload", action="store_true")
    p_serve.set_defaults(func=_cmd_serve)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
