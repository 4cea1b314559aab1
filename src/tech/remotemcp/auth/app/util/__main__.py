import argparse
import asyncio
import json
import logging
import os
from typing import List

from jwcrypto import jwk
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from ulid import ULID

from tech.remotemcp.auth.oauth.server import AuthorizationServer
from tech.remotemcp.auth.oauth.store import DatabaseOAuthModel

logger = logging.getLogger(__name__)


async def genJwk() -> None:
    key = jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")
    print(key.export(private_key=True))


async def genCryptoKey() -> None:
    print(os.urandom(32).hex())


async def registerClient(
    pg_dsn: str,
    name: str,
    redirect_uris: List[str],
    scope: str,
    auth_method: str,
) -> None:
    engine = create_async_engine(pg_dsn)
    try:
        database_session_maker = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )
        authorization_server = AuthorizationServer(
            DatabaseOAuthModel(database_session_maker)
        )
        registration = await authorization_server.register_client(
            {
                "client_name": name,
                "redirect_uris": redirect_uris,
                "scope": scope,
                "token_endpoint_auth_method": auth_method,
            }
        )
        print(json.dumps(registration, indent=2))
    finally:
        await engine.dispose()


async def realMain() -> None:
    parser = argparse.ArgumentParser(
        prog="remotemcp-util", description="Remote MCP auth utilities"
    )

    parser.add_argument(
        "--pg-dsn",
        default=os.getenv(
            "PG_DSN", "postgresql+asyncpg://postgres:password@db/remotemcp"
        ),
        help="The database to register clients in.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    _ = subparsers.add_parser("gen-jwk", help="Generate a session signing JWK")
    _ = subparsers.add_parser(
        "gen-crypto", help="Generate a connection encryption key"
    )
    register_client = subparsers.add_parser(
        "register-client", help="Register an OAuth client"
    )

    register_client.add_argument("name", help="The client name.")
    register_client.add_argument(
        "redirect_uris", nargs="+", help="One or more redirect URIs."
    )
    register_client.add_argument("--scope", default="read", help="Requested scopes.")
    register_client.add_argument(
        "--auth-method",
        default="client_secret_post",
        choices=["none", "client_secret_basic", "client_secret_post"],
        help="Token endpoint authentication method.",
    )

    args = vars(parser.parse_args())
    command = args.get("command", None)

    if command == "gen-jwk":
        await genJwk()
    elif command == "gen-crypto":
        await genCryptoKey()
    elif command == "register-client":
        await registerClient(
            args["pg_dsn"],
            args["name"],
            args["redirect_uris"],
            args["scope"],
            args["auth_method"],
        )


def main() -> None:
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
