#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import inspect
import logging
import os
from pathlib import Path
from typing import List, Optional

from devops_insights.db import Database, require_database_uri
from devops_insights.exceptions import AppError
from devops_insights.models import SyncType
from devops_insights.services.users import UserRoleService, UserService
from devops_insights.sync.orchestrator import SyncService
from devops_insights.utils.logging import configure_logging

logger = logging.getLogger(__name__)


def _load_dotenv(path: Path) -> int:
    """
    Load a .env file into process environment (without overriding existing vars).
    """
    if not path.exists():
        return 0
    loaded = 0
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if not key or key in os.environ:
            continue
        if (len(value) >= 2) and ((value[0] == value[-1]) and value[0] in {"'", '"'}):
            value = value[1:-1]
        os.environ[key] = value
        loaded += 1
    return loaded


def _cmd_api(ns: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run(
        "devops_insights.api.main:app",
        host=ns.host,
        port=ns.port,
        reload=ns.reload,
        log_level=str(ns.log_level).lower(),
    )
    return 0


async def _cmd_db_init(_ns: argparse.Namespace) -> int:
    database = Database(require_database_uri())
    try:
        await database.create_all()
        async with database.session() as session:
            created = await UserRoleService(session).seed_defaults()
    finally:
        await database.close()
    print(f"Database initialized ({len(created)} roles created)")
    return 0


async def _cmd_sync_run(ns: argparse.Namespace) -> int:
    database = Database(require_database_uri())
    try:
        service = SyncService(database)
        try:
            job = await service.start_sync(ns.repository_id, ns.sync_type)
        except AppError as e:
            logger.error("Could not start sync: %s", e.message)
            return 1
        job = await service.wait_for_job(job.id)
    finally:
        await database.close()
    print(f"Sync job {job.id}: {job.status}")
    if job.error:
        print(f"Error: {job.error}")
    return 0 if job.status == "completed" else 1


async def _cmd_create_user(ns: argparse.Namespace) -> int:
    database = Database(require_database_uri())
    try:
        async with database.session() as session:
            role_id = None
            if ns.role:
                role = await UserRoleService(session).get_by_name(ns.role)
                if role is None:
                    print(f"Error: role '{ns.role}' not found")
                    return 1
                role_id = role.id
            user = await UserService(session).create(
                name=ns.name,
                email=ns.email,
                login=ns.login,
                password=ns.password,
                role_id=role_id,
            )
            print(f"Created user: {user.email} ({user.id})")
    except AppError as e:
        print(f"Error: {e.message}")
        return 1
    finally:
        await database.close()
    return 0


async def _cmd_seed_roles(_ns: argparse.Namespace) -> int:
    database = Database(require_database_uri())
    try:
        async with database.session() as session:
            created = await UserRoleService(session).seed_defaults()
    finally:
        await database.close()
    for role in created:
        print(f"Created role: {role.name}")
    if not created:
        print("Default roles already present")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devops-insights",
        description="Sync Azure DevOps pull requests and serve KPI dashboards.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (DEBUG, INFO, WARNING). Defaults to env LOG_LEVEL or INFO.",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    # ---- api ----
    api = sub.add_parser("api", help="Run the REST API with uvicorn.")
    api.add_argument("--host", default=os.getenv("API_HOST", "0.0.0.0"))
    api.add_argument("--port", type=int, default=int(os.getenv("API_PORT", "8000")))
    api.add_argument("--reload", action="store_true", help="Reload on code changes.")
    api.set_defaults(func=_cmd_api)

    # ---- db ----
    db = sub.add_parser("db", help="Database management.")
    db_sub = db.add_subparsers(dest="db_command", required=True)
    db_init = db_sub.add_parser("init", help="Create tables and default roles.")
    db_init.set_defaults(func=_cmd_db_init)

    # ---- sync ----
    sync = sub.add_parser("sync", help="Repository syncs.")
    sync_sub = sync.add_subparsers(dest="sync_command", required=True)
    sync_run = sync_sub.add_parser("run", help="Sync one repository and wait.")
    sync_run.add_argument("repository_id", help="Repository UUID.")
    sync_run.add_argument(
        "--type",
        dest="sync_type",
        choices=[t.value for t in SyncType],
        default=SyncType.INCREMENTAL.value,
    )
    sync_run.set_defaults(func=_cmd_sync_run)

    # ---- admin ----
    admin = sub.add_parser("admin", help="User administration.")
    admin_sub = admin.add_subparsers(dest="admin_command", required=True)
    create_user = admin_sub.add_parser("create-user", help="Create a user.")
    create_user.add_argument("--name", required=True)
    create_user.add_argument("--email", required=True)
    create_user.add_argument("--login", required=True)
    create_user.add_argument("--password", required=True)
    create_user.add_argument("--role", help="Role name. Defaults to the default role.")
    create_user.set_defaults(func=_cmd_create_user)
    seed_roles = admin_sub.add_parser("seed-roles", help="Create built-in roles.")
    seed_roles.set_defaults(func=_cmd_seed_roles)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    if os.getenv("DISABLE_DOTENV", "").strip().lower() not in {
        "1",
        "true",
        "yes",
        "on",
    }:
        _load_dotenv(Path.cwd() / ".env")

    parser = build_parser()
    ns = parser.parse_args(argv)
    configure_logging(str(getattr(ns, "log_level", "") or "INFO"))

    func = getattr(ns, "func", None)
    if func is None:
        parser.print_help()
        return 2
    if inspect.iscoroutinefunction(func):
        return asyncio.run(func(ns))
    return int(func(ns))


if __name__ == "__main__":
    raise SystemExit(main())
