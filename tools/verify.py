#!/usr/bin/env python3
"""
CourtLedger Bundle Verifier

Verifies exported chain bundles independently.
No server or database connection required - verification is cryptographic.

Usage:
    python -m tools.verify bundle.json
    python -m tools.verify bundle.json --verbose
    python -m tools.verify bundle.json --json

Exit codes:
    0 - VERIFIED: All checks passed
    1 - TAMPERED: Hash, linkage or signature mismatch
    3 - INVALID_FORMAT: Bundle structure invalid
"""

import argparse
import json
import sys
from pathlib import Path

from courtledger.core.bundle import BundleCheck, BundleResult, verify_bundle


EXIT_CODES = {
    BundleResult.VERIFIED: 0,
    BundleResult.TAMPERED: 1,
    BundleResult.INVALID_FORMAT: 3,
}

BANNERS = {
    BundleResult.VERIFIED: "[VERIFIED] - All checks passed",
    BundleResult.TAMPERED: "[TAMPERED] - Hash, linkage or signature mismatch detected",
    BundleResult.INVALID_FORMAT: "[INVALID_FORMAT] - Bundle structure invalid",
}


def print_check(check: BundleCheck, json_output: bool = False, verbose: bool = False):
    """Print the outcome of a bundle check."""
    if json_output:
        print(json.dumps(check.to_dict(), indent=2))
        return

    print("\n" + "=" * 60)
    print(f"  {BANNERS[check.result]}")
    print("=" * 60)

    print(f"\nChain:  {check.chain_id}")
    print(f"Links:  {check.link_count}")

    report = check.report
    if report is not None and report.head_hash:
        print(f"Head:   {report.head_hash[:16]}...")
    if report is not None and not report.valid:
        print(f"Broken at sequence {report.broken_at_sequence} ({report.reason.value})")
        if verbose and report.violation.expected:
            print(f"  expected: {report.violation.expected}")
            print(f"  actual:   {report.violation.actual}")

    if check.checks_passed:
        print("\nPassed:")
        for item in check.checks_passed:
            print(f"  + {item}")

    if check.checks_failed:
        print("\nFailed:")
        for item in check.checks_failed:
            print(f"  - {item}")

    if check.warnings:
        print("\nWarnings:")
        for warning in check.warnings:
            print(f"  ! {warning}")

    print()


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="python -m tools.verify",
        description="Verify a CourtLedger chain bundle",
        epilog="Exit codes: 0=VERIFIED, 1=TAMPERED, 3=INVALID_FORMAT"
    )
    parser.add_argument(
        "bundle",
        type=str,
        help="Path to the bundle JSON file"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show expected/actual values at a break"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output result as JSON"
    )

    args = parser.parse_args(argv)

    bundle_path = Path(args.bundle)
    if not bundle_path.exists():
        print(f"ERROR: File not found: {bundle_path}")
        return EXIT_CODES[BundleResult.INVALID_FORMAT]

    try:
        with open(bundle_path, "r", encoding="utf-8") as f:
            bundle = json.load(f)
    except json.JSONDecodeError as e:
        print(f"ERROR: Invalid JSON: {e}")
        return EXIT_CODES[BundleResult.INVALID_FORMAT]
    except OSError as e:
        print(f"ERROR: Failed to read file: {e}")
        return EXIT_CODES[BundleResult.INVALID_FORMAT]

    check = verify_bundle(bundle)
    print_check(check, json_output=args.json, verbose=args.verbose)

    return EXIT_CODES[check.result]


if __name__ == "__main__":
    sys.exit(main())
