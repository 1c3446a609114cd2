#!/usr/bin/env python3
"""
Shielded Pool Command Line Interface.

Provides commands for inspecting and exercising the privacy subsystem:
    - check: Verify installation and configuration
    - info: Display configuration and session information
    - analyze / optimize: Circuit performance and recommendations
    - circuit-tests / benchmark: Circuit self-tests and timing runs
    - route: Recommend a route for a payment

Usage:
    shielded-pool check
    shielded-pool info
    shielded-pool analyze withdrawal
    shielded-pool circuit-tests transfer
    shielded-pool benchmark withdrawal --cases 5 --prometheus
    shielded-pool route --recipient 0x... --amount 2.0 --prefers-private
    shielded-pool --version
"""

import argparse
import json
import os
import platform
import sys
from dataclasses import replace

# Ensure src is in path when running from source
if os.path.exists(os.path.join(os.path.dirname(__file__), "privacy_pool.py")):
    sys.path.insert(0, os.path.dirname(__file__))

from dotenv import load_dotenv

from config import PrivacyConfig
from exceptions import PrivacyPoolError
from storage import MemoryStore

__version__ = "0.1.0"

DEFAULT_RECIPIENT = "0x" + "00" * 19 + "01"


def _print_json(data):
    print(json.dumps(data, indent=2, default=str))


def _session(args):
    from session import PrivacySession

    config = PrivacyConfig.from_env()
    depth = getattr(args, "tree_depth", None)
    if depth:
        config = PrivacyConfig.from_env(
            tree_depth=depth,
            pools=[replace(p, tree_depth=depth) for p in config.pools],
        )
    return PrivacySession.create(config, store=MemoryStore(), configure_logs=args.verbose)


def cmd_check(args):
    """Check installation and configuration."""
    print("Shielded Pool Installation Check")
    print("=" * 40)

    checks = []

    try:
        config = PrivacyConfig.from_env()
        checks.append((f"Configuration ({len(config.pools)} pool(s))", "OK"))
    except PrivacyPoolError as e:
        checks.append(("Configuration", f"FAIL: {e}"))
        config = None

    try:
        from proof_backend import SchnorrAttestationBackend, withdrawal_circuit

        backend = SchnorrAttestationBackend()
        backend.setup(withdrawal_circuit(4))
        checks.append(("Proof backend (py_ecc)", "OK"))
    except ImportError as e:
        checks.append(("Proof backend (py_ecc)", f"FAIL: {e}"))

    try:
        from encryption import decrypt_data, encrypt_data

        token = encrypt_data("check", "check-key", iterations=1000)
        round_trip = decrypt_data(token, "check-key", return_type="str")
        status = "OK" if round_trip == "check" else "FAIL: round trip mismatch"
        checks.append(("Encryption (cryptography)", status))
    except (ImportError, PrivacyPoolError) as e:
        checks.append(("Encryption (cryptography)", f"FAIL: {e}"))

    if config is not None:
        from storage import get_storage_backend

        try:
            store = get_storage_backend(config)
            status = "OK" if store.is_available() else "WARN (not available)"
            checks.append((f"Storage ({store.__class__.__name__})", status))
        except PrivacyPoolError as e:
            checks.append(("Storage", f"FAIL: {e}"))

        key_status = "OK" if config.encryption_key or os.getenv("SHIELDED_ENCRYPTION_KEY") else "WARN (not set)"
        checks.append(("Encryption key", key_status))

    print()
    all_ok = True
    for name, status in checks:
        icon = "✓" if status == "OK" else ("○" if "WARN" in status else "✗")
        print(f"  {icon} {name}: {status}")
        if "FAIL" in status:
            all_ok = False

    print()
    if all_ok:
        print("All checks passed!")
        return 0
    print("Some checks failed. See above for details.")
    return 1


def cmd_info(args):
    """Display system information."""
    print("Shielded Pool System Information")
    print("=" * 40)
    print(f"Version: {__version__}")
    print(f"Python: {platform.python_version()}")
    print(f"Platform: {platform.platform()}")

    config = PrivacyConfig.from_env()
    print()
    print("Configuration:")
    for key, value in config.to_dict().items():
        if key != "pools":
            print(f"  {key}: {value}")

    print()
    print("Pools:")
    for pool in config.pools:
        state = "active" if pool.is_active else "inactive"
        print(f"  {pool.denomination} ETH  {pool.contract_address}  depth={pool.tree_depth}  "
              f"{pool.network} ({state})")
    return 0


def cmd_analyze(args):
    session = _session(args)
    _print_json(session.analyzer.analyze_circuit_performance(args.circuit).to_dict())
    return 0


def cmd_optimize(args):
    session = _session(args)
    report = session.analyzer.generate_optimization_report(args.circuit)
    print(report["summary"])
    if args.json:
        _print_json(report)
    return 0


def cmd_circuit_tests(args):
    session = _session(args)
    report = session.analyzer.run_circuit_tests(args.circuit)
    for result in report.results:
        icon = "✓" if result.passed else "✗"
        line = f"  {icon} {result.test_name} ({result.duration_ms:.0f}ms)"
        if result.error:
            line += f": {result.error}"
        print(line)
    print()
    print(f"{report.passed} passed, {report.failed} failed, {report.total} total")
    return 0 if report.failed == 0 else 1


def cmd_benchmark(args):
    session = _session(args)
    _print_json(session.analyzer.benchmark_circuit(args.circuit, args.cases))
    if args.prometheus:
        print()
        print(session.metrics.to_prometheus())
    return 0


def cmd_route(args):
    session = _session(args)
    recommendation = session.router.recommend_route(
        args.recipient,
        args.amount,
        recipient_prefers_private=args.prefers_private,
        force_private=args.force_private,
        anonymity_set_size=args.anonymity_set,
    )
    _print_json(recommendation.to_dict())
    return 0


def main():
    """Main CLI entry point."""
    load_dotenv()

    parser = argparse.ArgumentParser(
        prog="shielded-pool",
        description="Shielded Pool - privacy pool wallet core",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", action="store_true", help="Log to stderr at the configured level")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("check", help="Check installation and configuration")
    subparsers.add_parser("info", help="Display system information")

    for name, help_text in (
        ("analyze", "Report circuit performance metrics"),
        ("optimize", "Print an optimization report for a circuit"),
        ("circuit-tests", "Run the circuit self-test suite"),
        ("benchmark", "Benchmark proving and verification"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("circuit", help="Circuit name (withdrawal, transfer, or a reference profile)")
        sub.add_argument("--tree-depth", type=int, help="Override the tree depth for this run")
        if name == "benchmark":
            sub.add_argument("--cases", type=int, default=10, help="Number of test cases (default: 10)")
            sub.add_argument(
                "--prometheus", action="store_true", help="Also print collected metrics in Prometheus text format"
            )
        if name == "optimize":
            sub.add_argument("--json", action="store_true", help="Also print the full report as JSON")

    route_parser = subparsers.add_parser("route", help="Recommend a payment route")
    route_parser.add_argument("--amount", required=True, help="Amount in ETH")
    route_parser.add_argument("--recipient", default=DEFAULT_RECIPIENT, help="Recipient address")
    preference = route_parser.add_mutually_exclusive_group()
    preference.add_argument("--prefers-private", dest="prefers_private", action="store_true", default=None)
    preference.add_argument("--no-private", dest="prefers_private", action="store_false")
    route_parser.add_argument("--force-private", action="store_true", help="Always route privately")
    route_parser.add_argument("--anonymity-set", type=int, help="Known anonymity set size")

    args = parser.parse_args()

    commands = {
        "check": cmd_check,
        "info": cmd_info,
        "analyze": cmd_analyze,
        "optimize": cmd_optimize,
        "circuit-tests": cmd_circuit_tests,
        "benchmark": cmd_benchmark,
        "route": cmd_route,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)

    try:
        sys.exit(handler(args))
    except PrivacyPoolError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
