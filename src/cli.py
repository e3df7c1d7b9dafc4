#!/usr/bin/env python3
"""CLI entry point for fleet-driver.

Commands:
- start: Provision N nodes on the configured backend
- list: Show the cluster's nodes
- teardown: Delete every node of the cluster
- tail: Follow a node's workload logs
- read: Print a file from a node
- authority: Create (or load) the mutual-TLS authority and show its fingerprint
- serve: Node mode; serve /health over mutual TLS with the mounted bundle
"""

import argparse
import json
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Optional

from backends.registry import get_backend
from common import Deadline, fan_out
from config import FleetConfig, load_config
from errors import ConfigurationError, FleetError, ProvisioningError
from fleet import Fleet
from fleet.state import PARTIAL
from readiness import wait_for_node
from server.httpd import DEFAULT_BIND, NodeServer
from server.tls import Authority

logger = logging.getLogger(__name__)

EXIT_PARTIAL = 2

# Set by the node manifest; the container runs `fleet -log=debug` with no command
MODE_ENV = 'FLEET_MODE'
NODE_MODE = 'node'


def get_version():
    """Get version from git tags, falling back to 'dev'."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
    except OSError:
        return 'dev'
    return result.stdout.strip() if result.returncode == 0 else 'dev'


def _deadline(args) -> Deadline:
    return Deadline(args.timeout) if getattr(args, 'timeout', None) else Deadline()


def _fleet(config: FleetConfig) -> Fleet:
    backend = get_backend(config)
    authority = Authority.load_or_create(config.authority_path)
    return Fleet(backend, authority)


def _print_nodes(nodes) -> None:
    for node in nodes:
        endpoint = node.endpoint.url if node.endpoint else '-'
        print(f"  {node.name:<20} {node.state:<18} {endpoint}")


def cmd_start(args, config: FleetConfig) -> int:
    config.validate()
    fleet = _fleet(config)
    deadline = _deadline(args)

    try:
        result = fleet.start(args.count, deadline)
    except ProvisioningError as e:
        if args.json_output and e.result is not None:
            print(json.dumps(e.result.to_dict(), indent=2))
        raise

    if args.wait and result.nodes:
        session = fleet.authority.http_session()
        outcomes = fan_out(lambda node: wait_for_node(session, node.endpoint, deadline=deadline),
                           result.nodes, name='health')
        for outcome in outcomes:
            if outcome.ok:
                logger.info("[%s] healthy", outcome.item.name)
            else:
                logger.error("[%s] not healthy: %s", outcome.item.name, outcome.error)

    if args.json_output:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(f"Cluster {config.cluster}: {len(result.nodes)}/{result.requested} node(s) ({result.status})")
        _print_nodes(result.nodes)

    if result.status == PARTIAL:
        logger.warning(result.error.message)
        return EXIT_PARTIAL
    return 0


def cmd_list(args, config: FleetConfig) -> int:
    nodes = _fleet(config).nodes()
    if args.json_output:
        print(json.dumps([node.to_dict() for node in nodes], indent=2))
        return 0
    print(f"Cluster {config.cluster} ({config.backend}): {len(nodes)} node(s)")
    _print_nodes(nodes)
    return 0


def cmd_teardown(args, config: FleetConfig) -> int:
    fleet = _fleet(config)
    if not args.yes:
        print(f"\nWARNING: every node of cluster '{config.cluster}' on {config.backend} will be deleted.")
        print("\nThis action cannot be undone.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return 1
    deleted = fleet.teardown(_deadline(args))
    print(f"Deleted {deleted} node(s)")
    return 0


def cmd_tail(args, config: FleetConfig) -> int:
    with _fleet(config).tail(args.node, _deadline(args)) as stream:
        try:
            for line in stream:
                sys.stdout.buffer.write(line)
                sys.stdout.buffer.flush()
        except KeyboardInterrupt:
            logger.info("Interrupted")
    return 0


def cmd_read(args, config: FleetConfig) -> int:
    data = _fleet(config).read(args.node, args.path, _deadline(args))
    sys.stdout.buffer.write(data)
    sys.stdout.buffer.flush()
    return 0


def cmd_authority(args, config: FleetConfig) -> int:
    authority = Authority.load_or_create(config.authority_path)
    print(f"Authority: {authority.path}")
    print(f"Fingerprint (SHA256): {authority.fingerprint}")
    return 0


def _parse_addr(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(':')
    if not sep or not port.isdigit():
        raise ConfigurationError(f"Invalid address '{addr}' (expected host:port)")
    return host or DEFAULT_BIND, int(port)


def cmd_serve(args, config: FleetConfig) -> int:
    bundle = args.bundle or Path('/') / config.authority_dir / config.authority_file
    bind, port = _parse_addr(args.addr or os.environ.get('FLEET_ADDR', f"{DEFAULT_BIND}:{config.port}"))
    server = NodeServer(
        authority=Authority.load(bundle),
        bind=bind,
        port=port,
        system=os.environ.get('FLEET_SYSTEM', config.backend),
    )
    server.start()
    server.serve_forever()
    return 0


COMMANDS = {
    'start': cmd_start,
    'list': cmd_list,
    'teardown': cmd_teardown,
    'tail': cmd_tail,
    'read': cmd_read,
    'authority': cmd_authority,
    'serve': cmd_serve,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='fleet',
        description='Provision mutual-TLS compute nodes on Compute Engine or Kubernetes',
    )
    parser.add_argument('--version', action='version', version=f'fleet-driver {get_version()}')
    parser.add_argument('--config', '-c', type=Path, help='Config file (default: $FLEET_CONFIG, ./fleet.yaml)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')
    parser.add_argument('--timeout', type=float, help='Overall deadline in seconds')

    sub = parser.add_subparsers(dest='command', required=True)

    start = sub.add_parser('start', help='Provision nodes')
    start.add_argument('--count', '-n', type=int, required=True, help='Number of nodes')
    start.add_argument('--json', dest='json_output', action='store_true', help='Print the result as JSON')
    start.add_argument('--wait', action='store_true', help='Wait for every node to answer /health')

    listing = sub.add_parser('list', help='List nodes of the cluster')
    listing.add_argument('--json', dest='json_output', action='store_true', help='Print nodes as JSON')

    teardown = sub.add_parser('teardown', help='Delete every node of the cluster')
    teardown.add_argument('--yes', '-y', action='store_true', help='Skip confirmation prompt')

    tail = sub.add_parser('tail', help="Follow a node's logs")
    tail.add_argument('node', help='Node name')

    read = sub.add_parser('read', help='Print a file from a node')
    read.add_argument('node', help='Node name')
    read.add_argument('path', help='Path on the node')

    sub.add_parser('authority', help='Create or show the mutual-TLS authority')

    serve = sub.add_parser('serve', help='Run as a node (inside the container)')
    serve.add_argument('--addr', help='host:port to bind (default: $FLEET_ADDR)')
    serve.add_argument('--bundle', type=Path, help='Authority bundle (default: /<authority_dir>/<authority_file>)')
    serve.add_argument('-log', dest='log_level', default='info', help=argparse.SUPPRESS)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    argv = sys.argv[1:] if argv is None else list(argv)
    if os.environ.get(MODE_ENV) == NODE_MODE and not any(arg in COMMANDS for arg in argv):
        argv = ['serve', *argv]
    args = parser.parse_args(argv)

    verbose = args.verbose or getattr(args, 'log_level', '') == 'debug'
    # Logs go to stderr so --json output stays parseable
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        stream=sys.stderr,
    )

    try:
        config = load_config(args.config)
        return COMMANDS[args.command](args, config)
    except FleetError as e:
        logger.error(e.message)
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
