#!/usr/bin/env python3
"""
CourtLedger Management CLI

Commands for operating the ledger:
- init-schema: Create the chain_links table (PostgreSQL)
- verify-chain: Verify one chain (or a window of it)
- verify-all: Verify every chain, optionally for one tenant prefix
- export-chain: Export a chain as a verifiable bundle
- tail: Show the latest links of a chain
- digest-evidence: Digest evidence fields from a JSON file
- generate-key: Generate an Ed25519 keypair for attestations
- health-check: Run health checks

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage init-schema
    python -m tools.manage verify-chain firm-7/dispatch/instr-42
    python -m tools.manage verify-all --prefix firm-7/
    python -m tools.manage export-chain firm-7/trust/acc-1 -o acc-1.json --sign
    python -m tools.manage digest-evidence attempt.json --service-attempt
"""

import argparse
import json
import sys

from courtledger.core import Signer, digest_evidence, export_bundle
from courtledger.db import PostgresChainStore
from courtledger.observability import check_health, setup_logging
from courtledger.runtime import get_ledger
from courtledger.schemas import ServiceAttemptEvidence


def _print_report(report, as_json: bool = False) -> None:
    if as_json:
        print(json.dumps(report.model_dump(mode="json"), indent=2))
        return

    if report.valid:
        print(f"[OK] {report.chain_id}: {report.length} links verified")
        if report.head_hash:
            print(f"  Chain head: {report.head_hash[:16]}...")
    else:
        violation = report.violation
        print(f"[FAIL] {report.chain_id}: broken at sequence {violation.sequence}")
        print(f"  Reason: {violation.reason.value}")
        print(f"  Verified before break: {report.length}")
        if violation.detail:
            print(f"  Detail: {violation.detail}")


def cmd_init_schema(args):
    """Create the chain_links table if it does not exist."""
    store = get_ledger().store

    if not isinstance(store, PostgresChainStore):
        print("Error: init-schema needs a PostgreSQL store (set DATABASE_URL)")
        return 1

    store.ensure_schema()
    print("[OK] Schema ready")
    return 0


def cmd_verify_chain(args):
    """Verify the integrity of one chain."""
    ledger = get_ledger()
    report = ledger.verify(args.chain_id, from_sequence=args.from_sequence, to_sequence=args.to_sequence)
    _print_report(report, as_json=args.json)
    return 0 if report.valid else 1


def cmd_verify_all(args):
    """Verify every chain under a prefix."""
    ledger = get_ledger()
    chain_ids = ledger.list_chains(args.prefix)

    if not chain_ids:
        print(f"No chains found with prefix {args.prefix!r}")
        return 0

    broken = 0
    for chain_id in chain_ids:
        report = ledger.verify(chain_id)
        _print_report(report)
        if not report.valid:
            broken += 1

    print(f"\nVerified {len(chain_ids)} chains: {len(chain_ids) - broken} OK, {broken} broken")
    return 0 if broken == 0 else 1


def cmd_export_chain(args):
    """Export a chain as a bundle JSON file."""
    ledger = get_ledger()

    signing_key = None
    if args.sign:
        signing_key = ledger.config.signing_key
        if not signing_key:
            print("Error: --sign needs COURTLEDGER_SIGNING_KEY")
            return 1

    bundle = export_bundle(ledger, args.chain_id, signing_key=signing_key)

    output_file = args.output or f"{args.chain_id.replace('/', '_')}.bundle.json"
    with open(output_file, "w", encoding="utf-8") as f:
        json.dump(bundle, f, indent=2)

    meta = bundle["_meta"]
    print(f"[OK] Exported {meta['link_count']} links to {output_file}")
    if not meta["chain_valid_at_export"]:
        print("  WARNING: chain did not verify at export time")
    if "attestation" in bundle:
        print("  Attested with key " + bundle["attestation"]["public_key"][:12] + "...")
    return 0


def cmd_tail(args):
    """Show the latest links of a chain."""
    ledger = get_ledger()
    head = ledger.head(args.chain_id)

    if head is None:
        print(f"Chain {args.chain_id} is empty")
        return 0

    start = max(0, head.sequence - args.count + 1)
    for link in ledger.read(args.chain_id, start, head.sequence):
        print(
            f"{link.sequence:>6}  {link.timestamp.isoformat()}  "
            f"{link.hash[:16]}...  {link.actor}  {link.action}"
        )
        if args.payload:
            print(f"        {link.payload_canon}")
    return 0


def cmd_digest_evidence(args):
    """Digest evidence fields read from a JSON file ("-" for stdin)."""
    if args.file == "-":
        fields = json.load(sys.stdin)
    else:
        with open(args.file, "r", encoding="utf-8") as f:
            fields = json.load(f)

    if args.service_attempt:
        # Parse first so timestamps and outcomes digest in their typed form
        fields = ServiceAttemptEvidence.model_validate(fields)

    digest = digest_evidence(fields)
    if args.json:
        print(json.dumps(digest.as_payload()))
    else:
        print(str(digest))
    return 0


def cmd_generate_key(args):
    """Generate an Ed25519 keypair for attestations."""
    private_key, public_key = Signer.generate_keypair()

    print("\n[OK] Attestation keypair generated")
    print("\n  Public key (share with auditors):")
    print(f"  {public_key}")
    print("\n  Private key (KEEP SECRET!):")
    print(f"  {private_key}")
    print("\n  Set this environment variable:")
    print(f"  COURTLEDGER_SIGNING_KEY={private_key}")
    return 0


def cmd_health_check(args):
    """Run health checks against the store and selected chains."""
    ledger = get_ledger()
    status = check_health(
        store=ledger.store,
        verifier=ledger.verifier,
        chain_ids=args.chain_id or (),
    )

    print("=== CourtLedger Health Check ===\n")
    for name, check in status.checks.items():
        marker = "[OK]" if check.get("status") == "healthy" else "[FAIL]"
        details = ", ".join(f"{k}={v}" for k, v in check.items() if k != "status")
        print(f"  {marker} {name}" + (f" ({details})" if details else ""))

    print(f"\n  Duration: {status.duration_ms}ms")
    print("\n=== Health Check Complete ===")
    return 0 if status.healthy else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m tools.manage",
        description="CourtLedger Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-schema
    subparsers.add_parser(
        "init-schema",
        help="Create the chain_links table (PostgreSQL)"
    )

    # verify-chain
    p_verify = subparsers.add_parser(
        "verify-chain",
        help="Verify one chain"
    )
    p_verify.add_argument("chain_id", help="Chain to verify")
    p_verify.add_argument("--from", dest="from_sequence", type=int, default=0,
                          help="First sequence of the window (default 0)")
    p_verify.add_argument("--to", dest="to_sequence", type=int, default=None,
                          help="Last sequence of the window (default: tail)")
    p_verify.add_argument("--json", action="store_true", help="Print the report as JSON")

    # verify-all
    p_verify_all = subparsers.add_parser(
        "verify-all",
        help="Verify every chain (optionally under a prefix)"
    )
    p_verify_all.add_argument("--prefix", default="", help="Chain id prefix, e.g. firm-7/")

    # export-chain
    p_export = subparsers.add_parser(
        "export-chain",
        help="Export a chain as a verifiable bundle"
    )
    p_export.add_argument("chain_id", help="Chain to export")
    p_export.add_argument("--output", "-o", help="Output file (default: <chain>.bundle.json)")
    p_export.add_argument("--sign", action="store_true",
                          help="Attest the chain head with COURTLEDGER_SIGNING_KEY")

    # tail
    p_tail = subparsers.add_parser(
        "tail",
        help="Show the latest links of a chain"
    )
    p_tail.add_argument("chain_id", help="Chain to show")
    p_tail.add_argument("--count", "-n", type=int, default=10, help="Number of links (default 10)")
    p_tail.add_argument("--payload", action="store_true", help="Also print canonical payloads")

    # digest-evidence
    p_digest = subparsers.add_parser(
        "digest-evidence",
        help="Digest evidence fields from a JSON file"
    )
    p_digest.add_argument("file", help="JSON file with evidence fields (- for stdin)")
    p_digest.add_argument("--service-attempt", action="store_true",
                          help="Validate the fields as a service-of-process attempt first")
    p_digest.add_argument("--json", action="store_true", help="Print the digest as JSON")

    # generate-key
    subparsers.add_parser(
        "generate-key",
        help="Generate an Ed25519 keypair for attestations"
    )

    # health-check
    p_health = subparsers.add_parser(
        "health-check",
        help="Run health checks"
    )
    p_health.add_argument("--chain-id", action="append",
                          help="Also verify this chain (repeatable)")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging()

    commands = {
        "init-schema": cmd_init_schema,
        "verify-chain": cmd_verify_chain,
        "verify-all": cmd_verify_all,
        "export-chain": cmd_export_chain,
        "tail": cmd_tail,
        "digest-evidence": cmd_digest_evidence,
        "generate-key": cmd_generate_key,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
