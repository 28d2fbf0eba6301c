#!/usr/bin/env python3
"""
keygate CLI - Command Line Interface
====================================

Run the gateway or administer the credential store directly on disk.

Usage:
    keygate serve                     # Run the HTTP gateway
    keygate keys list                 # List keys with usage stats
    keygate keys create               # Issue a generated key
    keygate keys create-raw           # Issue a caller-chosen key
    keygate keys update               # Change limit/used/status
    keygate keys delete               # Remove a key
    keygate keys reset                # Zero a key's usage

Examples:
    keygate serve --port 3000 --admin-key sk_admin_bootstrap_key
    keygate keys create --owner acme --limit 1000 --expires-in-days 30
    keygate keys update sk_abc123 --status inactive
"""

import argparse
import json
import sys
from typing import Any, Dict, List, Optional

from .admin import AdminService, KeyGenerator
from .config import ConfigError, GatewayConfig
from .credentials import ADMIN_ROLE, Credential
from .errors import GatewayError
from .storage import create_store


class Colors:
    """ANSI color codes."""

    GREEN = "\033[92m"
    CYAN = "\033[96m"
    FAIL = "\033[91m"
    ENDC = "\033[0m"


class KeygateCLI:
    """keygate Command Line Interface."""

    def __init__(self, config: GatewayConfig, out=None):
        self.config = config
        self.out = out or sys.stdout
        store = create_store(config.store.path, on_read_error=config.store.on_read_error)
        self.admin = AdminService(
            store,
            key_generator=KeyGenerator(prefix=config.security.key_prefix, length=config.security.key_length),
            near_limit_ratio=config.security.near_limit_ratio,
        )

    def _emit(self, payload: Dict[str, Any]) -> None:
        self.out.write(json.dumps(payload, indent=2, ensure_ascii=False) + "\n")

    @staticmethod
    def _serialize(credentials: List[Credential]) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in credentials]

    def keys_list(self) -> None:
        result = self.admin.list_with_stats()
        stats = dict(result["stats"])
        stats["keys_near_limit"] = self._serialize(stats["keys_near_limit"])
        stats["recent_activity"] = self._serialize(stats["recent_activity"])
        self._emit({"keys": self._serialize(result["keys"]), "stats": stats})

    def keys_create(self, owner: str, limit: int, expires_in_days: Optional[int], admin: bool) -> None:
        credential = self.admin.create(owner, limit, expires_in_days=expires_in_days, role=ADMIN_ROLE if admin else None)
        self._emit(credential.to_dict())

    def keys_create_raw(
        self, key: str, limit: int, owner: str, expires_in_days: Optional[int], admin: bool
    ) -> None:
        credential = self.admin.create_raw(
            key, limit, owner=owner, expires_in_days=expires_in_days, role=ADMIN_ROLE if admin else None
        )
        self._emit(credential.to_dict())

    def keys_update(self, key: str, limit: Optional[int], used: Optional[int], status: Optional[str]) -> None:
        credential = self.admin.update(key, {"limit": limit, "used": used, "status": status})
        self._emit(credential.to_dict())

    def keys_delete(self, key: str) -> None:
        self.admin.delete(key)
        self._emit({"deleted": key})

    def keys_reset(self, key: str) -> None:
        self._emit(self.admin.reset_usage(key).to_dict())

    def serve(self) -> None:
        """Run the HTTP gateway under uvicorn."""
        import uvicorn

        from .api import create_app
        from .observability import configure_logging

        obs = self.config.observability
        configure_logging(obs.log_level, obs.log_format)

        server = self.config.server
        print(f"{Colors.GREEN}Starting keygate on {server.host}:{server.port}{Colors.ENDC}", file=sys.stderr)
        print(f"Store: {self.config.store.path}", file=sys.stderr)
        print(f"{Colors.CYAN}Press Ctrl+C to stop{Colors.ENDC}", file=sys.stderr)

        uvicorn.run(create_app(self.config), host=server.host, port=server.port, log_config=None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keygate",
        description="keygate - API-key admission control",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", "-c", help="YAML config file (default: $KEYGATE_CONFIG)")
    parser.add_argument("--store", help="Credential store path (':memory:' for in-memory)")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    serve = subparsers.add_parser("serve", help="Run the HTTP gateway")
    serve.add_argument("--host", help="Bind address")
    serve.add_argument("--port", "-p", type=int, help="Bind port")
    serve.add_argument("--admin-key", help="Bootstrap admin key seeded at startup")

    keys_parser = subparsers.add_parser("keys", help="Credential commands")
    keys_sub = keys_parser.add_subparsers(dest="keys_command")

    keys_sub.add_parser("list", help="List keys with usage stats")

    create = keys_sub.add_parser("create", help="Issue a generated key")
    create.add_argument("--owner", "-o", required=True, help="Key owner")
    create.add_argument("--limit", "-l", type=int, required=True, help="Request quota")
    create.add_argument("--expires-in-days", type=int, help="Days until expiry")
    create.add_argument("--admin", action="store_true", help="Grant the admin role")

    create_raw = keys_sub.add_parser("create-raw", help="Issue a caller-chosen key")
    create_raw.add_argument("key", help="Key value")
    create_raw.add_argument("--limit", "-l", type=int, required=True, help="Request quota")
    create_raw.add_argument("--owner", "-o", default="unknown", help="Key owner")
    create_raw.add_argument("--expires-in-days", type=int, help="Days until expiry")
    create_raw.add_argument("--admin", action="store_true", help="Grant the admin role")

    update = keys_sub.add_parser("update", help="Change limit, used or status")
    update.add_argument("key", help="Key value")
    update.add_argument("--limit", "-l", type=int, help="New quota")
    update.add_argument("--used", "-u", type=int, help="New usage counter")
    update.add_argument("--status", "-s", choices=["active", "inactive"], help="New status")

    keys_sub.add_parser("delete", help="Remove a key").add_argument("key", help="Key value")
    keys_sub.add_parser("reset", help="Zero a key's usage").add_argument("key", help="Key value")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = GatewayConfig.load(args.config)
        if args.store:
            config.store.path = args.store
        if args.command == "serve":
            if args.host:
                config.server.host = args.host
            if args.port:
                config.server.port = args.port
            if args.admin_key:
                config.security.bootstrap_admin_key = args.admin_key
        config.validate()
    except ConfigError as e:
        print(f"{Colors.FAIL}{e}{Colors.ENDC}", file=sys.stderr)
        return 2

    cli = KeygateCLI(config)

    try:
        if args.command == "serve":
            cli.serve()

        elif args.command == "keys":
            if args.keys_command == "list":
                cli.keys_list()
            elif args.keys_command == "create":
                cli.keys_create(args.owner, args.limit, args.expires_in_days, args.admin)
            elif args.keys_command == "create-raw":
                cli.keys_create_raw(args.key, args.limit, args.owner, args.expires_in_days, args.admin)
            elif args.keys_command == "update":
                cli.keys_update(args.key, args.limit, args.used, args.status)
            elif args.keys_command == "delete":
                cli.keys_delete(args.key)
            elif args.keys_command == "reset":
                cli.keys_reset(args.key)
            else:
                parser.print_help()
                return 1

        else:
            parser.print_help()
            return 1

    except GatewayError as e:
        print(f"{Colors.FAIL}{e.message}{Colors.ENDC}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)

    return 0


if __name__ == "__main__":
    sys.exit(main())
