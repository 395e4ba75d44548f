from argparse import ArgumentParser, _SubParsersAction
import asyncio
import sys

from rollout_dev.cli.dev import run_dev
from rollout_dev.sdk.log import get_default_logger
from rollout_dev.sdk.utils import DEFAULT_BASE_URL, from_env

LOG = get_default_logger(__name__)


def setup_rollout_args(parser: ArgumentParser) -> None:
    """Setup the backend connection arguments."""
    parser.add_argument(
        "--project-api-key",
        help="[Optional] Project API key to use for the command. "
        + "If no project API key is provided, the project API key will be read "
        + "from the environment variable LMNR_PROJECT_API_KEY.",
        default=from_env("LMNR_PROJECT_API_KEY"),
    )
    parser.add_argument(
        "--base-url",
        help="[Optional] Base URL to use for the command. "
        + "If no base URL is provided, the base URL will be read from the "
        + f"'LMNR_BASE_URL' environment variable or we default to '{DEFAULT_BASE_URL}'.",
        default=from_env("LMNR_BASE_URL") or DEFAULT_BASE_URL,
    )
    parser.add_argument(
        "--port",
        help="[Optional] HTTP port of the backend. "
        + "If no port is provided, the port is taken from the base URL or defaults to '443'.",
        type=int,
    )
    parser.add_argument(
        "--grpc-port",
        help="[Optional] gRPC port the worker exports traces to. Defaults to '8443'.",
        type=int,
    )
    parser.add_argument(
        "--frontend-port",
        help="[Optional] Port of a local frontend, used for the session link. "
        + "Defaults to '5667'.",
        type=int,
    )


def setup_dev_parser(subparsers: _SubParsersAction) -> None:
    """Setup the dev subcommand parser."""
    parser_dev: ArgumentParser = subparsers.add_parser(
        "dev",
        description="Serve a rollout function to the backend and run it on request",
        help="Serve a rollout function to the backend and run it on request",
    )
    parser_dev.add_argument(
        "file",
        nargs="?",
        help="File containing the rollout entrypoint. "
        + "Python, TypeScript, and JavaScript files are supported.",
        default=None,
    )
    parser_dev.add_argument(
        "--python-module",
        help="Python module containing the rollout entrypoint, e.g. 'my_agent.main'. "
        + "Used instead of a file.",
        default=None,
    )
    parser_dev.add_argument(
        "--function",
        help="Name of the entrypoint to serve. Required if the target has more than one.",
        default=None,
    )
    setup_rollout_args(parser_dev)
    parser_dev.add_argument(
        "--command",
        help="[Optional] Executable that runs the worker, instead of the default "
        + "for the file type.",
        default=None,
    )
    parser_dev.add_argument(
        "--command-args",
        help="[Optional] Arguments for --command, as a single shell-quoted string.",
        default=None,
    )
    parser_dev.add_argument(
        "--discover-command",
        help="[Optional] Command that prints metadata for TypeScript/JavaScript files, "
        + "instead of 'npx rollout-dev-js discover'.",
        default=None,
    )
    parser_dev.add_argument(
        "--external-packages",
        nargs="*",
        help="[Optional] Packages left external when bundling TypeScript/JavaScript files.",
        default=None,
    )
    parser_dev.add_argument(
        "--dynamic-imports-to-skip",
        nargs="*",
        help="[Optional] Dynamic imports to skip when bundling TypeScript/JavaScript files.",
        default=None,
    )


def setup_discover_parser(subparsers: _SubParsersAction) -> None:
    """Setup the discover subcommand parser."""
    parser_discover: ArgumentParser = subparsers.add_parser(
        "discover",
        description="Print the metadata of a rollout entrypoint as an LMNR_METADATA line",
        help="Print the metadata of a rollout entrypoint",
    )
    target = parser_discover.add_mutually_exclusive_group(required=True)
    target.add_argument("--file", help="Python file containing the entrypoint")
    target.add_argument("--module", help="Python module containing the entrypoint")
    parser_discover.add_argument(
        "--function",
        help="Name of the entrypoint. Required if the target has more than one.",
        default=None,
    )


def setup_worker_parser(subparsers: _SubParsersAction) -> None:
    """Setup the worker subcommand parser."""
    subparsers.add_parser(
        "worker",
        description="Run one rollout. Reads its configuration from stdin. "
        + "Started by `rollout-dev dev`, not meant to be run by hand.",
        help="Run one rollout (internal)",
    )


def cli() -> None:
    """Main CLI entry point."""
    parser = ArgumentParser(
        prog="rollout-dev",
        description="Local development loop for rollout functions. "
        + "Call `rollout-dev [subcommand] --help` for more information on each subcommand.",
    )

    subparsers = parser.add_subparsers(title="subcommands", dest="subcommand")

    setup_dev_parser(subparsers)
    setup_discover_parser(subparsers)
    setup_worker_parser(subparsers)

    parsed = parser.parse_args()

    if parsed.subcommand == "dev":
        sys.exit(asyncio.run(run_dev(parsed)))
    elif parsed.subcommand == "discover":
        from rollout_dev.cli.discover import run_discover

        run_discover(parsed)
    elif parsed.subcommand == "worker":
        from rollout_dev.cli.worker import main

        main()
    else:
        parser.print_help()
