"""Command line entry point: ``python -m navigator_vault <command>``.

Commands:
    init      create a new vault (prompts for the master password)
    serve     run the local HTTP API
    rotate    change the master password, re-encrypting every entry
    generate  print a random password
"""
import sys
import logging
import argparse
from getpass import getpass

from pydantic import ValidationError as PydanticValidationError

from .version import __version__
from .config import VaultConfig
from .exceptions import VaultError
from .generator import generate_password
from .vault import Vault


def _prompt_new_password(label: str = "Master password") -> str:
    password = getpass(f"{label}: ")
    if getpass(f"Repeat {label.lower()}: ") != password:
        raise SystemExit("Passwords do not match")
    return password


def cmd_init(config: VaultConfig, args) -> int:
    vault = Vault(config=config)
    vault.initialize(_prompt_new_password())
    print(f"Vault created at {vault.path}")
    return 0


def cmd_serve(config: VaultConfig, args) -> int:
    from .server import run_server
    if args.host:
        config = config.model_copy(update={"server_host": args.host})
    if args.port:
        config = config.model_copy(update={"server_port": args.port})
    run_server(config)
    return 0


def cmd_rotate(config: VaultConfig, args) -> int:
    vault = Vault(config=config)
    current = getpass("Current master password: ")
    stats = vault.rotate_master_password(current, _prompt_new_password("New master password"))
    print(f"Re-encrypted {stats['rotated']} of {stats['total']} entries")
    return 0


def cmd_generate(config: VaultConfig, args) -> int:
    print(
        generate_password(
            length=args.length,
            special=not args.no_special,
            exclude=args.exclude,
        )
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="navigator_vault",
        description="Local password vault with a session-gated HTTP API",
    )
    parser.add_argument("--path", help="vault directory (default: $VAULT_DATABASE_PATH)")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    parser.add_argument("--version", action="version", version=f"navigator_vault {__version__}")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init", help="create a new vault").set_defaults(func=cmd_init)

    serve = commands.add_parser("serve", help="run the local HTTP API")
    serve.add_argument("--host", help="bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, help="bind port (default: 8765)")
    serve.set_defaults(func=cmd_serve)

    commands.add_parser("rotate", help="change the master password").set_defaults(func=cmd_rotate)

    generate = commands.add_parser("generate", help="print a random password")
    generate.add_argument("-l", "--length", type=int, default=20)
    generate.add_argument("--no-special", action="store_true", help="letters and digits only")
    generate.add_argument("--exclude", default="", help="characters to leave out")
    generate.set_defaults(func=cmd_generate)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        overrides = {"database_path": args.path} if args.path else {}
        config = VaultConfig.from_env(**overrides)
        return args.func(config, args)
    except PydanticValidationError as err:
        fields = ", ".join(".".join(map(str, e["loc"])) or "config" for e in err.errors())
        print(f"Error: invalid configuration ({fields})", file=sys.stderr)
        return 1
    except VaultError as err:
        print(f"Error: {err}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
