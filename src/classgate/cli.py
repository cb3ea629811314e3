"""
ClassGate Command Line Interface.

Provides commands for operating a ClassGate server:
- serve: Run the HTTP API
- setup: Create (or show) the registration token
- regenerate-token: Replace the registration token
- devices: List devices and rotate their download tokens
- manifest: Show the agent or bootstrap manifest
- catalog: Validate the catalog file
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

import yaml

from classgate import __version__
from classgate.config import ClassGateConfig, load_config, validate_config
from classgate.delivery.manifest import DeliveryService
from classgate.errors import ClassGateError
from classgate.policy.parser import CatalogParseError, load_catalog, validate_catalog
from classgate.registry.database import DeviceRegistry
from classgate.tokens.issuer import TokenIssuer


logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="classgate",
        description="Device registration and policy delivery for classroom internet filtering",
    )
    parser.add_argument(
        "-V", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-c", "--config",
        metavar="FILE",
        help="Path to configuration file",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output in JSON format",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", help="Override bind address")
    serve_parser.add_argument("--port", type=int, help="Override bind port")
    serve_parser.set_defaults(func=cmd_serve)

    # setup command
    setup_parser = subparsers.add_parser(
        "setup", help="Create the registration token if missing and print it"
    )
    setup_parser.set_defaults(func=cmd_setup)

    # regenerate-token command
    regen_parser = subparsers.add_parser(
        "regenerate-token", help="Replace the registration token"
    )
    regen_parser.set_defaults(func=cmd_regenerate_token)

    # devices command
    devices_parser = subparsers.add_parser("devices", help="List and manage devices")
    devices_sub = devices_parser.add_subparsers(dest="devices_cmd")

    list_parser = devices_sub.add_parser("list", help="List registered devices")
    list_parser.add_argument("--classroom", help="Filter by classroom id")
    list_parser.add_argument(
        "-n", "--limit",
        type=int,
        default=100,
        help="Number of devices to show",
    )

    rotate_parser = devices_sub.add_parser("rotate", help="Rotate a device's download token")
    rotate_parser.add_argument("hostname", help="Device hostname")

    devices_parser.set_defaults(func=cmd_devices)

    # manifest command
    manifest_parser = subparsers.add_parser("manifest", help="Show a release manifest")
    manifest_parser.add_argument(
        "--bootstrap",
        action="store_true",
        help="Show the bootstrap installer manifest instead of the agent release",
    )
    manifest_parser.set_defaults(func=cmd_manifest)

    # catalog command
    catalog_parser = subparsers.add_parser("catalog", help="Inspect the catalog")
    catalog_sub = catalog_parser.add_subparsers(dest="catalog_cmd")
    catalog_sub.add_parser("validate", help="Validate catalog file")
    catalog_parser.set_defaults(func=cmd_catalog)

    # Parse arguments
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    setup_logging("info")

    # Execute command
    try:
        return args.func(args)
    except ClassGateError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


def setup_logging(log_level: str) -> None:
    """Configure logging for the process."""
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def get_registry(config: ClassGateConfig) -> DeviceRegistry:
    """Get registry instance from config."""
    return DeviceRegistry(config.database.path, wal_mode=config.database.wal_mode)


def output(data: Any, args: argparse.Namespace) -> None:
    """Output data in requested format."""
    if getattr(args, "json", False):
        print(json.dumps(data, indent=2, default=str))
    elif isinstance(data, dict):
        for key, value in data.items():
            print(f"{key}: {value}")
    elif isinstance(data, list):
        for item in data:
            if isinstance(item, dict):
                for key, value in item.items():
                    print(f"  {key}: {value}")
                print()
            else:
                print(f"  {item}")
    else:
        print(data)


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the HTTP API."""
    import uvicorn

    from classgate.api import configure_services, create_app

    config = load_config(args.config)
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port

    logging.getLogger().setLevel(
        getattr(logging, config.server.log_level.upper(), logging.INFO)
    )

    for problem in validate_config(config):
        logger.warning("Configuration: %s", problem)

    app = create_app(
        debug=config.server.debug,
        cors_origins=config.server.cors_origins,
    )
    configure_services(app=app, config=config)

    logger.info("Starting API server on %s:%s", config.server.host, config.server.port)

    server_config = uvicorn.Config(
        app=app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level,
        access_log=False,
    )
    uvicorn.Server(server_config).run()
    return 0


def cmd_setup(args: argparse.Namespace) -> int:
    """Create the registration token if missing and print it."""
    config = load_config(args.config)
    registry = get_registry(config)

    try:
        issuer = TokenIssuer(config.tokens, registry)
        existed = issuer.has_registration_token()
        token = issuer.bootstrap_registration_token()
    finally:
        registry.close()

    if getattr(args, "json", False):
        output({"registration_token": token, "created": not existed}, args)
    else:
        print("Registration token" + (" (existing)" if existed else " (created)"))
        print(token)
    return 0


def cmd_regenerate_token(args: argparse.Namespace) -> int:
    """Replace the registration token."""
    config = load_config(args.config)
    registry = get_registry(config)

    try:
        token = TokenIssuer(config.tokens, registry).regenerate_registration_token()
    finally:
        registry.close()

    if getattr(args, "json", False):
        output({"registration_token": token}, args)
    else:
        print("New registration token (the previous one no longer works):")
        print(token)
    return 0


def cmd_devices(args: argparse.Namespace) -> int:
    """List and manage devices."""
    config = load_config(args.config)
    registry = get_registry(config)

    try:
        if args.devices_cmd == "list" or args.devices_cmd is None:
            filters = {}
            if getattr(args, "classroom", None):
                filters["classroom_id"] = args.classroom

            devices, total = registry.list_devices(
                filters=filters, limit=getattr(args, "limit", 100)
            )

            if getattr(args, "json", False):
                output([d.to_dict() for d in devices], args)
            else:
                print(f"Registered Devices ({total} total)")
                print("=" * 78)
                if not devices:
                    print("No devices found.")
                else:
                    print(f"{'Hostname':<28} {'Classroom':<20} {'Version':<10} {'Last Seen':<19}")
                    print("-" * 78)
                    for device in devices:
                        last_seen = (
                            device.last_seen_at.strftime("%Y-%m-%d %H:%M:%S")
                            if device.last_seen_at
                            else "never"
                        )
                        print(
                            f"{device.hostname[:28]:<28} "
                            f"{device.classroom_id[:20]:<20} "
                            f"{(device.installed_version or '-')[:10]:<10} "
                            f"{last_seen:<19}"
                        )

        elif args.devices_cmd == "rotate":
            issuer = TokenIssuer(config.tokens, registry)
            credential = issuer.issue_device_token()
            device = registry.rotate_token(
                args.hostname, credential.nonce, credential.token_hash
            )
            if device is None:
                print(f"Device not found: {args.hostname}")
                return 1

            whitelist_url = f"{config.server.base_url}/w/{credential.token}/whitelist.txt"
            if getattr(args, "json", False):
                output({"hostname": device.hostname, "whitelist_url": whitelist_url}, args)
            else:
                print(f"Download token rotated: {device.hostname}")
                print(f"New whitelist URL: {whitelist_url}")

        return 0

    finally:
        registry.close()


def cmd_manifest(args: argparse.Namespace) -> int:
    """Show a release manifest."""
    config = load_config(args.config)
    delivery = DeliveryService.from_config(config.delivery)
    builder = delivery.bootstrap if args.bootstrap else delivery.agent

    if not Path(config.delivery.agent_root).is_dir():
        print(f"Agent root not found: {config.delivery.agent_root}")
        return 1

    manifest = builder.build()

    if getattr(args, "json", False):
        output(manifest.to_dict(), args)
    else:
        print(f"{builder.name.capitalize()} manifest {manifest.version} ({len(manifest.files)} files)")
        print("=" * 78)
        for entry in manifest.files:
            print(f"{entry.sha256}  {entry.size:>9}  {entry.path}")

        missing = set(builder.files) - {entry.path for entry in manifest.files}
        if missing:
            print("\nMissing files:")
            for path in sorted(missing):
                print(f"  - {path}")

    return 0


def cmd_catalog(args: argparse.Namespace) -> int:
    """Inspect the catalog."""
    config = load_config(args.config)
    catalog_path = Path(config.catalog.path)

    if args.catalog_cmd == "validate" or args.catalog_cmd is None:
        if not catalog_path.exists():
            print(f"Catalog file not found: {catalog_path}")
            return 1

        try:
            catalog = load_catalog(catalog_path)
        except (CatalogParseError, yaml.YAMLError) as e:
            print(f"Catalog validation failed: {e}")
            return 1

        print(
            f"Catalog valid: {len(catalog.classrooms)} classrooms, "
            f"{len(catalog.groups)} groups loaded"
        )

        problems = validate_catalog(catalog)
        if problems:
            print("\nProblems:")
            for problem in problems:
                print(f"  - {problem}")
            errors = [p for p in problems if not p.startswith("Warning:")]
            return 1 if errors else 0

    return 0


if __name__ == "__main__":
    sys.exit(main())
