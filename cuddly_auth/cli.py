import argparse
import asyncio

from pydantic import ValidationError

from cuddly_auth.core.config import settings
from cuddly_auth.core.errors import AlreadyExists
from cuddly_auth.db.session import Database
from cuddly_auth.schemas.auth import RegisterRequest
from cuddly_auth.services import auth as auth_service
from cuddly_auth.services import challenges


async def init_db(database_url: str) -> None:
    database = Database(database_url)
    try:
        await database.create_all()
    finally:
        await database.dispose()
    print("Database initialised")


async def create_user(database_url: str, *, email: str, password: str, name: str | None) -> None:
    try:
        payload = RegisterRequest(email=email, password=password, name=name)
    except ValidationError as exc:
        raise SystemExit(str(exc.errors()[0]["msg"]).removeprefix("Value error, ")) from exc

    database = Database(database_url)
    try:
        await database.create_all()
        async with database.session() as session:
            try:
                user = await auth_service.register_user(session, payload)
            except AlreadyExists as exc:
                raise SystemExit(f"Email already registered: {payload.email}") from exc
    finally:
        await database.dispose()
    print(f"Created user {user.id}")


async def purge_challenges(database_url: str) -> None:
    database = Database(database_url)
    try:
        async with database.session() as session:
            removed = await challenges.purge_expired_challenges(session)
    finally:
        await database.dispose()
    print(f"Removed {removed} expired challenge(s)")


def _add_user_commands(subparsers) -> None:
    create = subparsers.add_parser("create-user", help="Create an email/password account")
    create.add_argument("--email", required=True, help="Account email")
    create.add_argument("--password", required=True, help="Account password (min 8 characters)")
    create.add_argument("--name", help="Display name (optional)")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Cuddly auth administration")
    parser.add_argument("--database-url", default=settings.database_url, help="SQLAlchemy async database URL")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("init-db", help="Create the database tables")
    _add_user_commands(subparsers)
    subparsers.add_parser("purge-challenges", help="Delete expired WebAuthn challenges")
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "init-db":
        asyncio.run(init_db(args.database_url))
        return True

    if args.command == "create-user":
        asyncio.run(create_user(args.database_url, email=args.email, password=args.password, name=args.name))
        return True

    if args.command == "purge-challenges":
        asyncio.run(purge_challenges(args.database_url))
        return True

    return False


def main(argv: list[str] | None = None):
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
