"""Command-line interface to start the exporter.

The CLI layers command-line flags over :class:`EnvSettings` (environment and
``.env``), configures logging, and serves the FastAPI app with uvicorn.
Configuration, credentials and subscription discovery are resolved by the
app's lifespan, so a broken query file or an identity without subscriptions
stops the process before it starts serving.

Usage
-----
    azure-resourcegraph-exporter --config queries.yaml --port 8080
"""

from __future__ import annotations

import argparse
from typing import Any, Dict, List, Optional

import uvicorn

from ..config.models import EnvSettings
from ..observability import setup_logging
from .http import create_app


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the exporter CLI."""
    parser = argparse.ArgumentParser(
        description="Azure Resource Graph exporter for Prometheus"
    )
    parser.add_argument("--config", help="Path to the query config (YAML or JSON)")
    parser.add_argument(
        "--log-level",
        dest="log_level",
        choices=[
            "CRITICAL",
            "ERROR",
            "WARNING",
            "INFO",
            "DEBUG",
        ],
        help="Logging level (overrides environment)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (once sets DEBUG)",
    )
    parser.add_argument(
        "--log-json",
        dest="log_json",
        action="store_true",
        default=None,
        help="Emit JSON log lines",
    )
    parser.add_argument("--host", help="HTTP bind host (default 0.0.0.0)")
    parser.add_argument("--port", type=int, help="HTTP port (default 8080)")
    parser.add_argument(
        "--azure-environment",
        dest="azure_environment",
        help="Azure cloud (AzurePublicCloud, AzureChinaCloud, AzureUSGovernmentCloud)",
    )
    parser.add_argument(
        "--subscription",
        dest="subscriptions",
        action="append",
        default=None,
        help="Subscription id to expose (repeatable; default: auto discovery)",
    )
    return parser


def settings_from_args(
    args: argparse.Namespace, base: Optional[EnvSettings] = None
) -> EnvSettings:
    """Overlay explicitly given CLI flags on environment settings."""
    settings = base or EnvSettings()
    overrides: Dict[str, Any] = {}
    if args.config:
        overrides["config_path"] = args.config
    if args.log_level:
        overrides["log_level"] = args.log_level
    elif args.verbose > 0:
        overrides["log_level"] = "DEBUG"
    if args.log_json is not None:
        overrides["log_json"] = args.log_json
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if args.azure_environment:
        overrides["azure_environment"] = args.azure_environment
    if args.subscriptions:
        overrides["subscriptions"] = ",".join(args.subscriptions)
    return settings.model_copy(update=overrides)


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entrypoint for running the exporter."""
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = settings_from_args(args)
    if not settings.config_path:
        parser.error("--config is required (or set RESOURCEGRAPH_EXPORTER_CONFIG_PATH)")

    # Apply early so subsequent imports use configured level
    setup_logging(settings.log_level, settings.log_json)
    app = create_app(settings=settings)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
