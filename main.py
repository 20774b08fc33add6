"""
CLI entry point for CyberHub.

Usage:
    python main.py init-db [--reset]
    python main.py seed [--computers 5] [--price 500]
    python main.py check-offline
    python main.py expire-commands
    python main.py stats
    python main.py serve [--host 0.0.0.0] [--port 8000]
"""

import argparse
import asyncio
import json
import sys

from cyberhub.client import ClientOptions, CyberHubClient
from cyberhub.config import configure_logging, get_settings
from cyberhub.db.engine import drop_db, init_db
from cyberhub.db.models import UserRole
from cyberhub.exceptions import CyberHubException
from cyberhub.services import (
    CenterService,
    CommandService,
    ComputerService,
    PricingService,
    SessionService,
    UserService,
)


def _client() -> CyberHubClient:
    return CyberHubClient(ClientOptions(omit={"user": {"password_hash": True}}))


async def _init_db(args):
    async with _client() as client:
        if args.reset:
            await drop_db(client.engine)
        await init_db(client.engine)
    print(f"Database ready ({get_settings().database.url})")


async def _seed(args):
    async with _client() as client:
        await init_db(client.engine)
        if await client.organization.find_first({"name": args.organization}):
            print(f"Organization {args.organization!r} already exists; nothing to seed.")
            return

        centers = CenterService(client)
        computers = ComputerService(client)
        organization = await centers.create_organization(args.organization)
        center = await centers.create_cyber_center("Main Hall", organization.id, location="Ground floor")
        for i in range(1, args.computers + 1):
            await computers.register_computer(
                f"demo-pc-{i:02d}", name=f"PC-{i:02d}", cyber_center_id=center.id
            )
        await PricingService(client).create_pricing(args.price, active=True)
        admin = await UserService(client).register(
            args.admin_email, args.admin_password, role=UserRole.ADMIN, cyber_center_id=center.id
        )

    print(f"""
Seeded demo data:
  Organization:  {organization.name} ({organization.id})
  Cyber center:  {center.name} ({center.id})
  Computers:     {args.computers}
  Active price:  {args.price} per minute
  Admin:         {admin.email}
""")


async def _check_offline(args):
    async with _client() as client:
        count = await ComputerService(client).check_offline_computers()
    print(f"Marked {count} computer(s) OFFLINE")


async def _expire_commands(args):
    async with _client() as client:
        count = await CommandService(client).expire_unacked()
    print(f"Expired {count} unacknowledged command(s)")


async def _stats(args):
    async with _client() as client:
        stats = await SessionService(client).today_stats()
    print(json.dumps(stats, indent=2))


def cmd_init_db(args):
    """Create (or recreate) the database tables."""
    asyncio.run(_init_db(args))


def cmd_seed(args):
    """Insert a demo organization, center, computers, pricing and admin."""
    asyncio.run(_seed(args))


def cmd_check_offline(args):
    """Run one presence sweep."""
    asyncio.run(_check_offline(args))


def cmd_expire_commands(args):
    """Fail commands that were sent but never acknowledged."""
    asyncio.run(_expire_commands(args))


def cmd_stats(args):
    """Print today's session statistics."""
    asyncio.run(_stats(args))


def cmd_serve(args):
    """Start the FastAPI server."""
    import uvicorn

    from cyberhub.api import create_app

    settings = get_settings()
    host = args.host or settings.api.host
    port = args.port or settings.api.port
    print(f"Starting CyberHub API on {host}:{port}")
    uvicorn.run(create_app(), host=host, port=port, log_config=None)


def main():
    parser = argparse.ArgumentParser(description="CyberHub - cyber center management")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init-db
    p_init = subparsers.add_parser("init-db", help="Create database tables")
    p_init.add_argument("--reset", action="store_true", help="Drop all tables first")

    # seed
    p_seed = subparsers.add_parser("seed", help="Insert demo data")
    p_seed.add_argument("--organization", default="Demo Organization")
    p_seed.add_argument("--computers", type=int, default=5)
    p_seed.add_argument("--price", type=int, default=500, help="Active price per minute")
    p_seed.add_argument("--admin-email", default="admin@cyberhub.io")
    p_seed.add_argument("--admin-password", default="change-me-now")

    # maintenance
    subparsers.add_parser("check-offline", help="Mark silent computers OFFLINE")
    subparsers.add_parser("expire-commands", help="Fail unacknowledged commands")
    subparsers.add_parser("stats", help="Show today's session statistics")

    # serve
    p_serve = subparsers.add_parser("serve", help="Start REST API server")
    p_serve.add_argument("--host", default=None)
    p_serve.add_argument("--port", type=int, default=None)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    configure_logging()

    commands = {
        "init-db": cmd_init_db,
        "seed": cmd_seed,
        "check-offline": cmd_check_offline,
        "expire-commands": cmd_expire_commands,
        "stats": cmd_stats,
        "serve": cmd_serve,
    }
    try:
        commands[args.command](args)
    except CyberHubException as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
