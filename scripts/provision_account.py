#!/usr/bin/env python3
"""Provision a premium account row for local testing and support.

Production rows are written by the payment webhook; this script writes the
same fields (status, tier, payment type, entitlement token) by hand.

Usage:
    # Using environment variables:
    ACCOUNT_EMAIL=a@example.com python scripts/provision_account.py

    # Or with command line args:
    python scripts/provision_account.py --email a@example.com --tier foundation

    # Index entitlement tokens on rows written before the index existed:
    python scripts/provision_account.py --reindex-entitlements

Environment Variables:
    ACCOUNT_EMAIL: Email for the account
    REDIS_URL: Redis connection string (uses the memory store if USE_MEMORY_STORE=true)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def provision_account(
    email: str,
    *,
    tier: str,
    payment_type: str,
    first_name: str = "",
    inactive: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create or re-activate an account.

    Returns:
        dict with email, status ('created', 'updated' or 'dry_run') and access_token
    """
    # Import here to avoid loading config before env vars are set
    from signalnoise.service.runtime import get_runtime
    from signalnoise.service.tokens import generate_token, normalize_account_id
    from signalnoise.storage.common import now_ms

    runtime = get_runtime()
    account_id = normalize_account_id(email)
    existing = await runtime.store.get_account(account_id)

    if dry_run:
        action = "update" if existing else "create"
        print(f"[DRY RUN] Would {action} account {account_id}")
        return {"email": account_id, "status": "dry_run", "access_token": None}

    access_token = (existing.access_token if existing else None) or generate_token()
    fields = {
        "status": "inactive" if inactive else "active",
        "tier": tier,
        "payment_type": payment_type,
        "access_token": access_token,
        "first_name": first_name or (existing.first_name if existing else ""),
    }
    if existing is None:
        fields["last_active"] = now_ms()
        fields["login_count"] = 0
    await runtime.store.provision_account(account_id, fields)
    await runtime.store.close()

    return {
        "email": account_id,
        "status": "updated" if existing else "created",
        "access_token": access_token,
    }


async def reindex_entitlements() -> int:
    """Back-fill the entitlement index so revocation lookups stay a single read."""
    from signalnoise.service.runtime import get_runtime

    runtime = get_runtime()
    written = await runtime.store.reindex_entitlements()
    await runtime.store.close()
    return written


def main():
    parser = argparse.ArgumentParser(
        description="Provision a Signal/Noise premium account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ACCOUNT_EMAIL"),
        help="Account email (or set ACCOUNT_EMAIL env var)",
    )
    parser.add_argument(
        "--tier",
        choices=["foundation", "early_adopter"],
        default="early_adopter",
    )
    parser.add_argument(
        "--payment-type",
        choices=["lifetime", "subscription"],
        default="lifetime",
    )
    parser.add_argument("--first-name", default="")
    parser.add_argument(
        "--inactive",
        action="store_true",
        help="Write the row with status=inactive",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    parser.add_argument(
        "--reindex-entitlements",
        action="store_true",
        help="Write missing entitlement index entries for existing rows and exit",
    )

    args = parser.parse_args()

    if args.reindex_entitlements:
        try:
            written = asyncio.run(reindex_entitlements())
        except Exception as e:
            print(f"Error: {e}")
            sys.exit(1)
        print(f"Entitlement index entries written: {written}")
        return

    if not args.email:
        print("Error: --email or ACCOUNT_EMAIL environment variable required")
        sys.exit(1)

    try:
        result = asyncio.run(
            provision_account(
                args.email,
                tier=args.tier,
                payment_type=args.payment_type,
                first_name=args.first_name,
                inactive=args.inactive,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] in ("created", "updated"):
        print(f"\nAccount {result['status']}: {result['email']}")
        print(f"  Access Token: {result['access_token']}")


if __name__ == "__main__":
    main()
