"""
Create a client_credentials client and its service user, then print the credentials once.

Usage:
    python -m oauth2_server.create_client "Reporting job" --scope reports --scope all
"""
import argparse
import asyncio
import logging
import sys

from oauth2_server.database import SessionLocal, close_db, init_db
from oauth2_server.seed import ProvisionedClient, provision_client
from oauth2_server.store import SQLAlchemyEntityStore

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oauth2-create-client",
        description="Provision a client_credentials client with a generated service user.",
    )
    parser.add_argument("name", help="Human-readable client name")
    parser.add_argument(
        "--scope",
        action="append",
        default=[],
        metavar="SCOPE",
        help="Scope granted to the service user (repeatable)",
    )
    return parser


async def _create(name: str, scopes: list[str]) -> ProvisionedClient:
    await init_db()
    try:
        return await provision_client(SQLAlchemyEntityStore(SessionLocal), name, scopes)
    finally:
        await close_db()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    provisioned = asyncio.run(_create(args.name, args.scope))
    print(f"client name:   {provisioned.client.name}")
    print(f"client_id:     {provisioned.client.client_id}")
    print(f"client_secret: {provisioned.client.client_secret}")
    print(f"service user:  {provisioned.user.username}")
    print(f"scopes:        {', '.join(provisioned.user.scopes) or '(none)'}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
