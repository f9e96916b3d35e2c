#!/usr/bin/env python3
"""
zkTLS Snapshot Command Line Interface.

Provides commands for inspecting and driving the snapshot pipeline:
    - check: Verify configuration, storage and the verification key
    - config: Show or change the notary settings
    - snapshots: List, revoke or re-publish stored snapshots
    - demo: Run one snapshot end to end against the simulated backend

Usage:
    zktls-snapshot check
    zktls-snapshot config show
    zktls-snapshot config set-notary https://notary.example.com [--timeout 30]
    zktls-snapshot snapshots list --owner 0xABC --signature 0x...
    zktls-snapshot snapshots revoke SNAPSHOT_ID --owner 0xABC --signature 0x...
    zktls-snapshot demo --provider github --owner 0xABC --signature 0x...
    zktls-snapshot --version
"""

import argparse
import json
import os
import sys

# Ensure src is in path when running from source
if os.path.exists(os.path.join(os.path.dirname(__file__), "orchestrator.py")):
    sys.path.insert(0, os.path.dirname(__file__))

__version__ = "0.1.0"

DEMO_FIXTURES = {
    "twitter": {"data": {"public_metrics": {"followers_count": 500}, "verified": True,
                         "created_at": "2019-04-01T00:00:00Z"}},
    "github": {"public_repos": 42, "followers": 120, "following": 8,
               "created_at": "2016-09-12T10:00:00Z"},
    "upwork": {"profile": {"completed_jobs": 37, "rating": 4.9, "total_earnings": 52000}},
    "binance": {"kyc_level": 2, "country_code": 784, "created_at": "2021-01-05T00:00:00Z"},
}

# Cookies that satisfy each built-in login check in the demo
DEMO_COOKIES = {
    "twitter": {"auth_token": "demo"},
    "github": {"user_session": "demo"},
    "upwork": {"oauth_token": "demo"},
    "binance": {"token": "demo"},
}


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def _build_coordinator(args, capture_service=None):
    """Wire a coordinator from environment settings (simulated capture when given)."""
    from capture import AttestationCaptureService
    from config import get_notary_config
    from metadata_client import MetadataClient
    from orchestrator import SnapshotCoordinator
    from providers import default_registry
    from storage import SnapshotStore, get_storage_backend
    from verifier import AttestationVerifier
    from vkey_loader import VerificationKeyLoader

    backend = get_storage_backend()
    registry = default_registry()
    if capture_service is None:
        capture_service = AttestationCaptureService.from_config(registry, get_notary_config(backend))
    return SnapshotCoordinator(
        registry=registry,
        capture_service=capture_service,
        verifier=AttestationVerifier(VerificationKeyLoader()),
        store=SnapshotStore(backend),
        metadata_client=MetadataClient() if getattr(args, "publish", False) else None,
    )


def cmd_check(args):
    """Check configuration, storage and verification key."""
    from config import get_notary_config, is_production, validate_notary_config
    from errors import StorageIOFailure
    from storage import get_storage_backend
    from vkey_loader import VerificationKeyLoader

    print("zkTLS Snapshot Configuration Check")
    print("=" * 40)

    checks = []
    checks.append(("Environment", "production" if is_production() else "development"))

    backend = None
    try:
        backend = get_storage_backend()
        status = "OK" if backend.is_available() else "WARN (not available)"
        checks.append((f"Storage ({backend.__class__.__name__})", status))
    except StorageIOFailure as e:
        checks.append(("Storage", f"FAIL: {e.message}"))

    notary = get_notary_config(backend)
    if validate_notary_config(notary):
        checks.append((f"Notary ({notary.url})", "OK"))
    else:
        checks.append((f"Notary ({notary.url})", "FAIL: invalid configuration"))

    loader = VerificationKeyLoader()
    if loader.preload():
        vkey = loader.cached
        status = "WARN (placeholder key)" if vkey.is_placeholder else "OK"
        checks.append((f"Verification key ({vkey.source})", status))
    else:
        checks.append(("Verification key", "FAIL: no valid key"))

    print()
    all_ok = True
    for name, status in checks:
        icon = "✗" if status.startswith("FAIL") else ("○" if status.startswith("WARN") else "✓")
        print(f"  {icon} {name}: {status}")
        if status.startswith("FAIL"):
            all_ok = False

    print()
    if all_ok:
        print("All checks passed!")
        return 0
    print("Some checks failed. See above for details.")
    return 1


def cmd_config(args):
    """Show or change the stored notary configuration."""
    from config import clear_notary_config, get_notary_config, set_notary_config
    from errors import SnapshotError
    from storage import get_storage_backend

    backend = get_storage_backend()
    try:
        if args.config_command == "set-notary":
            partial = {"url": args.url}
            if args.timeout is not None:
                partial["timeout"] = args.timeout
            if args.max_retries is not None:
                partial["max_retries"] = args.max_retries
            config = set_notary_config(backend, **partial)
        elif args.config_command == "reset":
            clear_notary_config(backend)
            config = get_notary_config(backend)
        else:
            config = get_notary_config(backend)
    except SnapshotError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    _print_json(config.to_dict())
    return 0


def cmd_snapshots(args):
    """List, revoke or re-publish snapshots."""
    from orchestrator import ListSnapshots, RetryPublish, RevokeSnapshot

    coordinator = _build_coordinator(args)
    try:
        if args.snapshots_command == "revoke":
            response = coordinator.handle(RevokeSnapshot(
                owner=args.owner, signature=args.signature,
                snapshot_id=args.snapshot_id, reason=args.reason,
            ))
        elif args.snapshots_command == "retry-publish":
            response = coordinator.handle(RetryPublish(signature=args.signature, owner=args.owner))
        else:
            response = coordinator.handle(ListSnapshots(owner=args.owner, signature=args.signature))
    finally:
        coordinator.shutdown()
    _print_json(response.to_dict())
    return 0 if response.success else 1


def cmd_demo(args):
    """Run one snapshot through the full pipeline with simulated capture."""
    from capture import AttestationCaptureService, SimulatedBackend
    from config import is_production
    from monitoring import metrics
    from orchestrator import CreateSnapshot
    from providers import default_registry
    from providers.base import PageHandle

    if is_production():
        print("Error: the demo uses simulated capture and is disabled in production", file=sys.stderr)
        return 1

    registry = default_registry()
    capability = registry.get(args.provider)
    if capability is None:
        print(f"Error: unknown provider {args.provider}", file=sys.stderr)
        return 1

    url = f"https://{capability.api_domain}{capability.endpoint}"
    backend = SimulatedBackend(fixtures={url: DEMO_FIXTURES.get(args.provider, {})})
    capture_service = AttestationCaptureService(registry, backend, production=False)
    coordinator = _build_coordinator(args, capture_service=capture_service)

    page = PageHandle(
        url=f"https://{capability.host_patterns[0]}/",
        cookies=DEMO_COOKIES.get(args.provider, {}),
        markers=frozenset({"user-menu", "chat-list"}),
    )
    try:
        response = coordinator.handle(CreateSnapshot(
            owner=args.owner, signature=args.signature, page=page, provider_id=args.provider,
        ))
    finally:
        coordinator.shutdown()

    _print_json(response.to_dict())
    if args.metrics:
        print(metrics.to_prometheus())
    return 0 if response.success else 1


def main():
    """Main CLI entry point."""
    from dotenv import load_dotenv

    from monitoring import configure_logging

    load_dotenv()
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))

    parser = argparse.ArgumentParser(
        prog="zktls-snapshot",
        description="zkTLS Snapshot - private, notarized attribute snapshots",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # check command
    subparsers.add_parser("check", help="Check configuration, storage and verification key")

    # config command
    config_parser = subparsers.add_parser("config", help="Show or change notary settings")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("show", help="Show the effective notary configuration")
    config_sub.add_parser("reset", help="Remove the stored notary override")
    set_parser = config_sub.add_parser("set-notary", help="Store a notary override")
    set_parser.add_argument("url", help="Notary base URL (https)")
    set_parser.add_argument("--timeout", type=float, help="Request timeout in seconds")
    set_parser.add_argument("--max-retries", type=int, help="Retries before giving up")

    # snapshots command
    snapshots_parser = subparsers.add_parser("snapshots", help="Manage stored snapshots")
    snapshots_sub = snapshots_parser.add_subparsers(dest="snapshots_command")
    for name, help_text in (
        ("list", "List snapshots and decrypt their attributes"),
        ("revoke", "Revoke a snapshot"),
        ("retry-publish", "Publish records still queued locally"),
    ):
        sub = snapshots_sub.add_parser(name, help=help_text)
        sub.add_argument("--owner", required=name != "retry-publish", help="Owner wallet address")
        sub.add_argument("--signature", required=name != "retry-publish", help="Owner wallet signature")
        sub.add_argument("--publish", action="store_true", default=name != "list",
                         help="Talk to the metadata service")
        if name == "revoke":
            sub.add_argument("snapshot_id", help="Snapshot to revoke")
            sub.add_argument("--reason", help="Revocation reason")

    # demo command
    demo_parser = subparsers.add_parser("demo", help="Run one simulated snapshot end to end")
    demo_parser.add_argument("--provider", default="github", help="Provider id (default: github)")
    demo_parser.add_argument("--owner", required=True, help="Owner wallet address")
    demo_parser.add_argument("--signature", required=True, help="Owner wallet signature")
    demo_parser.add_argument("--publish", action="store_true", help="Publish to the metadata service")
    demo_parser.add_argument("--metrics", action="store_true", help="Print metrics after the run")

    args = parser.parse_args()

    if args.command == "check":
        sys.exit(cmd_check(args))
    elif args.command == "config":
        sys.exit(cmd_config(args))
    elif args.command == "snapshots" and args.snapshots_command:
        sys.exit(cmd_snapshots(args))
    elif args.command == "demo":
        sys.exit(cmd_demo(args))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
