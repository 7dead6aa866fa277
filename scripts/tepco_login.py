#!/usr/bin/env python3
"""
TEPCO Login Helper

Runs the browser login once, outside the collector, and stores the captured
bearer token in the collector database. Useful for the first run, and for
watching the login in a visible browser when the scheduled login fails.

Requirements (install locally):
    pip install -e .
    playwright install chromium

Usage:
    python scripts/tepco_login.py              # Log in if no valid token is stored
    python scripts/tepco_login.py --status     # Show stored token and last runs
    python scripts/tepco_login.py --force      # Log in even if a token is stored
    python scripts/tepco_login.py --test       # Collect yesterday's usage with the token
    python scripts/tepco_login.py --headless   # Run the browser without a window
"""

import argparse
import asyncio
import getpass
import sys
from datetime import datetime, timedelta, timezone

from tepco_collector.authenticator import BrowserAuthenticator
from tepco_collector.config import ConfigurationError, settings
from tepco_collector.credentials import CredentialManager
from tepco_collector.database import StorageError, initialize_schema
from tepco_collector.main import CollectorService, configure_logging
from tepco_collector.repository import CollectionLogRepository
from tepco_collector.token_store import TokenStore


def print_banner(text: str):
    """Print a banner with text."""
    print()
    print("=" * 60)
    print(text)
    print("=" * 60)


def print_success(text: str):
    """Print success message."""
    print(f"\n[OK] {text}")


def print_error(text: str):
    """Print error message."""
    print(f"\n[ERROR] {text}")


def print_info(text: str):
    """Print info message."""
    print(f"[INFO] {text}")


def show_status():
    """Show configuration, stored token and recent collection runs."""
    print_banner("TEPCO STATUS")

    print("Configuration (.secrets / .env):")
    if settings.credentials_configured:
        print(f"  Username: {settings.tepco_username}")
        print(f"  Password: {'*' * min(len(settings.tepco_password), 8)}")
    else:
        print("  Credentials: [NOT CONFIGURED]")
    print(f"  Contract number: {settings.tepco_contract_num or '[NOT CONFIGURED]'}")
    print(f"  Account ID: {settings.tepco_account_id or '[NOT CONFIGURED]'}")
    print(f"  Database: {settings.db_path}")

    print("\nBearer Token:")
    token_store = TokenStore(settings.db_path)
    current = token_store.get_valid()
    if current:
        remaining = current.expires_at - datetime.now(timezone.utc)
        print("  Status: VALID")
        print(f"  Expires: {current.expires_at.strftime('%Y-%m-%d %H:%M:%S UTC')}")
        print(f"  Time remaining: ~{remaining.total_seconds() / 3600:.1f} hours")
    elif token_store.get_expiry():
        print("  Status: EXPIRED")
        print("  Run: python scripts/tepco_login.py --force")
    else:
        print("  Status: NOT FOUND")
        print("  Run: python scripts/tepco_login.py")

    print("\nRecent collection runs:")
    logs = CollectionLogRepository(settings.db_path).recent(limit=5)
    if not logs:
        print("  None")
    for log in logs:
        created = log.created_at.strftime('%Y-%m-%d %H:%M') if log.created_at else "?"
        print(f"  {created}  {log.job_type:<12} {log.status:<8} {log.message}")


async def run_login(username: str, password: str, headless: bool, force: bool) -> bool:
    """Log in through the browser and store the token."""
    print_banner("TEPCO LOGIN")
    manager = CredentialManager(
        token_store=TokenStore(settings.db_path),
        authenticator=BrowserAuthenticator(
            login_url=settings.tepco_login_url,
            top_url=settings.tepco_top_url,
            headless=headless,
            navigation_timeout_ms=settings.browser_navigation_timeout_ms,
            token_wait_s=settings.browser_token_wait_s,
        ),
        username=username,
        password=password,
        token_lifetime=timedelta(hours=settings.token_lifetime_hours),
    )

    if not force and manager.token_store.get_valid():
        print_success("A valid token is already stored (use --force to log in again)")
        return True

    print_info(f"Opening {'headless ' if headless else ''}browser for {settings.tepco_login_url}")
    result = await manager.authenticate(force=force)
    if not result.ok:
        print_error(f"Login failed ({result.error.value}): {result.detail}")
        return False

    print_success(f"Token stored in {settings.db_path}")
    return True


async def test_collection() -> bool:
    """Collect yesterday's usage with the stored token."""
    print_banner("TEPCO COLLECTION TEST")
    service = CollectorService.build(settings)
    try:
        settings.require_contract()
        result = await service.jobs.collect_yesterday(job_type="manual")
    except ConfigurationError as e:
        print_error(str(e))
        return False
    finally:
        await service.collector.close()

    if result.record is None:
        print_error(f"Collection failed: {result.message}")
        return False

    record = result.record
    print_success(f"{record.usage_date}: {record.kwh_used} kWh, {record.charge_yen} yen")
    print(f"  Billing status: {record.billing_status}")
    print(f"  Month to date: {record.cumulative_kwh} kWh, {record.cumulative_charge_yen} yen")
    return True


async def main():
    parser = argparse.ArgumentParser(
        description="TEPCO Login Helper - log in once and store the bearer token",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/tepco_login.py              # Log in if needed
  python scripts/tepco_login.py --status     # Show current status
  python scripts/tepco_login.py --force      # Force a new login
  python scripts/tepco_login.py --test       # Collect yesterday's usage
        """
    )
    parser.add_argument("--status", action="store_true",
                       help="Show stored token and recent runs")
    parser.add_argument("--force", action="store_true",
                       help="Log in even if a valid token is stored")
    parser.add_argument("--test", action="store_true",
                       help="Collect yesterday's usage with the stored token")
    parser.add_argument("--headless", action="store_true", default=settings.browser_headless,
                       help="Run the browser without a window")

    args = parser.parse_args()
    configure_logging(settings.log_level)

    try:
        initialize_schema(settings.db_path)

        if args.status:
            show_status()
            return

        if args.test:
            success = await test_collection()
            sys.exit(0 if success else 1)

        username, password = settings.tepco_username, settings.tepco_password
        if not username or not password:
            print_banner("TEPCO LOGIN")
            print("Enter your Kurashi TEPCO account credentials.\n")
            username = input("TEPCO Username (email): ").strip()
            if not username:
                print_error("Username is required")
                sys.exit(1)
            password = getpass.getpass("TEPCO Password: ").strip()
            if not password:
                print_error("Password is required")
                sys.exit(1)

        success = await run_login(username, password, args.headless, args.force)
    except StorageError as e:
        print_error(f"Database error: {e}")
        sys.exit(1)

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    asyncio.run(main())
