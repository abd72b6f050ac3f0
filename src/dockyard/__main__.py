"""Dockyard CLI entry point."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from dockyard.security import API_KEY_ENV, generate_api_key
from dockyard.vault import AUTH_SECRET_ENV


# ── Default template for `dockyard init` ─────────────────────────────────────

_DEFAULT_CONFIG = """\
# .dockyard/config.yaml: Dockyard configuration
# Secrets are read from the environment only:
#   {auth_secret_env}  encrypts per-sandbox credentials (required)
#   {api_key_env}      protects the HTTP API (optional)

platform:
  base_url: "http://localhost:3500/v1"
  api_key_env: DOCKYARD_PLATFORM_API_KEY

sandbox:
  runtime: "opencode:latest"
  memory: 4Gi
  cpu: 4000m
  idle_timeout: 2h
  dependencies: [git, gh]
  provider_secrets: [ANTHROPIC_API_KEY, OPENAI_API_KEY]

agent_server:
  port: 4096
  home_dir: /home/agentuity
  default_model: anthropic/claude-sonnet-4-5
  readiness_attempts: 90
  readiness_interval: 1.0
  clone_timeout: 2m

retry:
  max_attempts: 5
  base_delay: 1.0

health:
  ttl_seconds: 15
  failure_threshold: 3

stream:
  keepalive_seconds: 15
"""


def _init_project(config_dir: Path) -> None:
    """Scaffold a config directory with the default configuration."""
    config_path = config_dir / "config.yaml"
    if config_path.exists():
        print(f"Error: {config_path} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    config_dir.mkdir(parents=True, exist_ok=True)
    config_path.write_text(
        _DEFAULT_CONFIG.format(auth_secret_env=AUTH_SECRET_ENV, api_key_env=API_KEY_ENV)
    )

    print(f"Initialized Dockyard config at {config_path}")
    print()
    print("Next steps:")
    print(f"  1. Review {config_path}")
    print(f"  2. Set {AUTH_SECRET_ENV} (try: dockyard gen-secret) and DOCKYARD_PLATFORM_API_KEY")
    print(f"  3. Run: dockyard serve --config-dir {config_dir}")


def main():
    parser = argparse.ArgumentParser(
        prog="dockyard",
        description="Dockyard: sandbox session orchestrator for remote AI coding agents",
    )

    subparsers = parser.add_subparsers(dest="command")

    # dockyard init
    init_parser = subparsers.add_parser("init", help="Write a default config.yaml")
    init_parser.add_argument(
        "--config-dir",
        type=Path,
        default=Path.cwd() / ".dockyard",
        help="Config directory (default: ./.dockyard)",
    )

    # dockyard serve
    serve_parser = subparsers.add_parser("serve", help="Start the Dockyard API server")
    serve_parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Config directory (default: $DOCKYARD_CONFIG_DIR or ./.dockyard)",
    )
    serve_parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)",
    )
    serve_parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    # dockyard gen-secret
    subparsers.add_parser("gen-secret", help="Print a random value for secrets/API keys")

    args = parser.parse_args()

    if args.command == "init":
        _init_project(args.config_dir)
        return

    if args.command == "gen-secret":
        print(generate_api_key())
        return

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if not os.environ.get(AUTH_SECRET_ENV):
        print(f"Error: {AUTH_SECRET_ENV} is not set", file=sys.stderr)
        print("Generate one with 'dockyard gen-secret'", file=sys.stderr)
        sys.exit(1)

    import uvicorn

    from dockyard.server import create_app

    app = create_app(config_dir=args.config_dir)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
