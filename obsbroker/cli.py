"""obsbroker CLI - database access and credential commands for an installed stack

Usage:
    obsbroker [-n RELEASE] [--namespace NS] port-forward [-t PORT] [-g PORT] [-p PORT] [-c PORT] [-l PORT]
    obsbroker grafana change-password PASSWORD
    obsbroker timescaledb get-password [-U KEY]
    obsbroker timescaledb connection-uri [-U KEY] [-d DATABASE] [--hold]
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

from obsbroker import stack
from obsbroker.client import Client
from obsbroker.core.exceptions import BrokerError, CompensationFailed
from obsbroker.core.resolver import SUPERUSER_KEY

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_INCONSISTENT = 3

_PORT_FLAGS = {
    "timescaledb": ("-t", "--timescaledb"),
    "grafana": ("-g", "--grafana"),
    "prometheus": ("-p", "--prometheus"),
    "connector": ("-c", "--connector"),
    "promlens": ("-l", "--promlens"),
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="obsbroker",
        description="Reach the database and manage credentials of an observability stack",
    )
    parser.add_argument("-n", "--name", default=stack.DEFAULT_RELEASE, help="Release name of the stack")
    parser.add_argument("--namespace", default=stack.DEFAULT_NAMESPACE, help="Namespace the stack is installed in")
    parser.add_argument("--kubeconfig", help="Path to a kubeconfig file")
    parser.add_argument("--context", help="Kubeconfig context to use")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More output (repeatable)")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # port-forward command
    pf_parser = subparsers.add_parser(
        "port-forward",
        help="Port-forward TimescaleDB, Grafana, Prometheus, the connector and PromLens to localhost",
    )
    for component in stack.COMPONENTS:
        short, long = _PORT_FLAGS[component.name]
        pf_parser.add_argument(
            short,
            long,
            type=int,
            default=component.default_local_port,
            help=f"Local port for {component.name} (0 picks a free port)",
        )

    # grafana commands
    grafana_parser = subparsers.add_parser("grafana", help="Grafana operations")
    grafana_sub = grafana_parser.add_subparsers(dest="grafana_command")
    change_parser = grafana_sub.add_parser("change-password", help="Change the Grafana admin password")
    change_parser.add_argument("password", help="New admin password")

    # timescaledb commands
    tsdb_parser = subparsers.add_parser("timescaledb", help="TimescaleDB operations")
    tsdb_sub = tsdb_parser.add_subparsers(dest="timescaledb_command")
    get_pw_parser = tsdb_sub.add_parser("get-password", help="Print a stored database password")
    get_pw_parser.add_argument("-U", "--user", default=SUPERUSER_KEY, help="Credential key to read")
    uri_parser = tsdb_sub.add_parser("connection-uri", help="Resolve and print a connection URI")
    uri_parser.add_argument("-U", "--user", default=SUPERUSER_KEY, help="Credential key to connect with")
    uri_parser.add_argument("-d", "--dbname", default="postgres", help="Database to connect to")
    uri_parser.add_argument(
        "--hold",
        action="store_true",
        help="Keep the tunnel (if one was needed) open until interrupted",
    )

    return parser


def run_port_forward(client: Client, args: argparse.Namespace) -> int:
    ports = {name: getattr(args, name) for name in _PORT_FLAGS}
    handles = client.port_forward(ports)
    try:
        for handle in handles:
            print(f"Forwarding localhost:{handle.local_port} -> {handle.pod}:{handle.remote_port}")
        print("Press Ctrl+C to stop")
        for handle in handles:
            handle.wait()
    except KeyboardInterrupt:
        pass
    finally:
        for handle in handles:
            handle.close()
    return EXIT_OK


def run_grafana_change_password(client: Client, args: argparse.Namespace) -> int:
    print("Changing password...")
    client.change_grafana_password(args.password)
    print("Grafana admin password changed")
    return EXIT_OK


def run_get_password(client: Client, args: argparse.Namespace) -> int:
    print(client.get_db_password(args.user))
    return EXIT_OK


def run_connection_uri(client: Client, args: argparse.Namespace) -> int:
    resolution = client.resolve(args.user, args.dbname, verbose=args.verbose > 0)
    try:
        print(resolution.descriptor.to_uri())
        if args.hold and resolution.tunnel is not None:
            print("Tunnel open; press Ctrl+C to close it")
            try:
                resolution.tunnel.wait()
            except KeyboardInterrupt:
                pass
    finally:
        resolution.release()
    return EXIT_OK


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_USAGE
    if args.command == "grafana" and not args.grafana_command:
        parser.parse_args([args.command, "--help"])
    if args.command == "timescaledb" and not args.timescaledb_command:
        parser.parse_args([args.command, "--help"])

    _configure_logging(args.verbose)

    handlers = {
        ("port-forward", None): run_port_forward,
        ("grafana", "change-password"): run_grafana_change_password,
        ("timescaledb", "get-password"): run_get_password,
        ("timescaledb", "connection-uri"): run_connection_uri,
    }
    sub = getattr(args, f"{args.command.replace('-', '_')}_command", None)
    handler = handlers[(args.command, sub)]

    try:
        client = Client.from_kubeconfig(
            namespace=args.namespace,
            release=args.name,
            kubeconfig=args.kubeconfig,
            context=args.context,
        )
        return handler(client, args)
    except CompensationFailed as exc:
        print(
            f"error: {exc}\nThe stored credential no longer matches the live service; "
            "set it back manually.",
            file=sys.stderr,
        )
        return EXIT_INCONSISTENT
    except (BrokerError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
