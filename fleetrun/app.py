#!/usr/bin/env python3
"""
fleetrun - run a pipeline profile across a fleet of hosts over SSH.

Usage:
    fleetrun PROFILE [--profiles-dir DIR] [--param NAME=VALUE] [--max-parallel N]
                     [--journal FILE] [--log-level LEVEL] [--log-file FILE]

Exits 0 when every host succeeded, 1 when any host failed, 2 when the
profile cannot be found or is invalid.
"""

import argparse
import os
import sys

from .core import (
    EventStream, LogConfig, Orchestrator, ProfileManager, configure_logging,
)


def parse_params(values):
    """Turn ["name=value", ...] into a dict."""
    params = {}
    for item in values or []:
        name, sep, value = item.partition('=')
        if not sep or not name:
            raise argparse.ArgumentTypeError(f"expected NAME=VALUE, got {item!r}")
        params[name] = value
    return params


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='fleetrun',
        description='fleetrun - run commands and copy files across hosts over SSH',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    fleetrun deploy                                 # ./profiles/deploy.yaml
    fleetrun deploy --param release=2024-06-01      # fill {release} placeholders
    fleetrun deploy --max-parallel 2 --journal run.jsonl
        """
    )
    parser.add_argument('profile', help='Name of the pipeline profile to run')
    parser.add_argument(
        '--profiles-dir',
        help='Directory holding pipeline profiles (default: ./profiles)'
    )
    parser.add_argument(
        '--param',
        action='append',
        metavar='NAME=VALUE',
        help='Value for a {NAME} placeholder in the task list (repeatable)'
    )
    parser.add_argument(
        '--max-parallel',
        type=int,
        help='Maximum number of hosts processed at once (default: from profile)'
    )
    parser.add_argument(
        '--journal',
        help='Append pipeline events to this JSONL file'
    )
    parser.add_argument(
        '--log-level',
        default='WARNING',
        choices=['TRACE', 'DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Console log level (default: WARNING)'
    )
    parser.add_argument(
        '--log-file',
        help='Also write a DEBUG log to this file'
    )
    return parser


def main(argv=None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(LogConfig(level=args.log_level, file=args.log_file))

    profiles_dir = args.profiles_dir or os.path.join(os.getcwd(), 'profiles')
    manager = ProfileManager(profiles_dir)
    try:
        params = parse_params(args.param)
        profile = manager.load_profile(args.profile)
    except (argparse.ArgumentTypeError, ValueError) as e:
        print(f"fleetrun: {e}", file=sys.stderr)
        return 2
    if profile is None:
        available = ", ".join(manager.list_profiles()) or "none"
        print(f"fleetrun: profile not found: {args.profile} (available: {available})", file=sys.stderr)
        return 2

    missing = [name for name in profile.parameters() if name not in params]
    if missing:
        print(f"fleetrun: missing --param for: {', '.join(missing)}", file=sys.stderr)
        return 2

    try:
        context = profile.to_context()
        tasks = profile.to_tasks(params)
    except ValueError as e:
        print(f"fleetrun: invalid profile {args.profile}: {e}", file=sys.stderr)
        return 2

    settings = profile.settings
    orchestrator = Orchestrator(
        auth=profile.auth.to_auth(),
        max_parallel=args.max_parallel or settings.max_parallel,
        connect_timeout=settings.connect_timeout,
        retry_attempts=settings.retry_attempts,
        retry_delay=settings.retry_delay,
        journal=EventStream(args.journal) if args.journal else None,
    )

    try:
        result = orchestrator.run(context, tasks)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130

    print(result.summary())
    return 0 if result.ok else 1


if __name__ == '__main__':
    sys.exit(main())
