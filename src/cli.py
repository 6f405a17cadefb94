"""
Credit Ledger CLI

Commands:
  init-db   - Create the ledger tables
  costs     - Show the feature price list
  balance   - Show a tenant's balance
  validate  - Check whether a tenant can afford a feature
  debit     - Charge a tenant for a feature
  refund    - Credit a tenant back for a failed operation
  history   - List a tenant's usage records
  report    - Per-member usage for a period

Reads DATABASE_URL and the LEDGER_* variables from the environment.
"""

import argparse
import json
import sys

import structlog

from ledger.features import FeatureKey

FEATURES = [f.value for f in FeatureKey]


def _configure_logging():
    # Command output goes to stdout; keep log lines on stderr
    structlog.configure(
        logger_factory=lambda *args: structlog.PrintLogger(file=sys.stderr),
    )


def _config():
    from ledger import LedgerConfig

    try:
        return LedgerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}")
        sys.exit(2)


def _ledger():
    from ledger import CreditLedger

    config = _config()
    try:
        return CreditLedger.from_config(config)
    except ValueError as e:
        print(f"Configuration error: {e}")
        sys.exit(2)


def cmd_init_db(args):
    """Create the ledger tables."""
    from persistence import Database

    config = _config()
    db = Database(config.database_url)
    db.initialize()
    print(f"Database ready: {config.database_url}")


def cmd_costs(args):
    """Show the feature price list."""
    try:
        registry = _config().cost_registry()
    except ValueError as e:
        print(f"Configuration error: {e}")
        sys.exit(2)

    print("Feature Costs")
    print("=" * 40)
    for feature, cost in registry.as_dict().items():
        print(f"  {feature:<24} {cost:>5} credits")


def cmd_balance(args):
    """Show a tenant's balance."""
    ledger = _ledger()
    balance = ledger.balance(args.actor, organization_id=args.org)

    print(f"Tenant: {balance.tenant_id}")
    print(f"  Credits: {balance.credits}")
    print(f"  Refill amount: {balance.refill_amount}")
    print(f"  Last synced: {balance.last_synced_at}")


def cmd_validate(args):
    """Check whether a tenant can afford a feature."""
    from ledger import InsufficientCredits

    ledger = _ledger()
    try:
        check = ledger.validate(args.actor, args.feature, args.quantity, organization_id=args.org)
    except InsufficientCredits as e:
        print(f"Insufficient credits: required {e.required}, available {e.available}")
        sys.exit(1)

    print(f"OK: {check.needed} needed, {check.available} available")


def cmd_debit(args):
    """Charge a tenant for a feature."""
    from ledger import InsufficientCredits

    ledger = _ledger()
    try:
        result = ledger.debit(
            args.actor,
            args.feature,
            quantity=args.quantity,
            organization_id=args.org,
            idempotency_key=args.key,
        )
    except InsufficientCredits as e:
        print(json.dumps(e.to_dict()))
        sys.exit(1)

    print(json.dumps(result.to_dict(), indent=2))


def cmd_refund(args):
    """Credit a tenant back for a failed operation."""
    ledger = _ledger()
    result = ledger.refund(
        args.actor,
        args.feature,
        quantity=args.quantity,
        organization_id=args.org,
        reason=args.reason,
        idempotency_key=args.key,
    )
    if result is None:
        print("Refund failed, see log for details")
        sys.exit(1)

    print(json.dumps(result.to_dict(), indent=2))


def cmd_history(args):
    """List a tenant's usage records."""
    ledger = _ledger()
    entries = ledger.history(
        args.actor,
        organization_id=args.org,
        limit=args.limit,
        offset=args.offset,
        feature=args.feature,
    )

    for entry in entries:
        record = entry.record
        line = f"{record.created_at[:19]}  {record.kind:<6}  {record.feature:<20} {record.credits:>6}  {record.actor_id}"
        if entry.is_refund and entry.reason:
            line += f"  ({entry.reason})"
        print(line)

    if not entries:
        print("No usage recorded")


def cmd_report(args):
    """Per-member usage for a period."""
    ledger = _ledger()
    try:
        report = ledger.report(
            args.actor,
            organization_id=args.org,
            period=args.period,
            start=args.start,
            end=args.end,
        )
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(json.dumps(report, indent=2))


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Credit Ledger - Metered Usage Billing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    def tenant_args(sub):
        sub.add_argument("actor", help="Actor identity")
        sub.add_argument("--org", help="Organization context")

    def charge_args(sub):
        tenant_args(sub)
        sub.add_argument("feature", choices=FEATURES, help="Feature key")
        sub.add_argument("--quantity", type=int, default=1)
        sub.add_argument("--key", help="Idempotency key")

    # init-db
    subparsers.add_parser("init-db", help="Create the ledger tables")

    # costs
    subparsers.add_parser("costs", help="Show feature costs")

    # balance
    balance_parser = subparsers.add_parser("balance", help="Show balance")
    tenant_args(balance_parser)

    # validate
    validate_parser = subparsers.add_parser("validate", help="Pre-flight credit check")
    tenant_args(validate_parser)
    validate_parser.add_argument("feature", choices=FEATURES, help="Feature key")
    validate_parser.add_argument("--quantity", type=int, default=1)

    # debit
    debit_parser = subparsers.add_parser("debit", help="Debit credits")
    charge_args(debit_parser)

    # refund
    refund_parser = subparsers.add_parser("refund", help="Refund credits")
    charge_args(refund_parser)
    refund_parser.add_argument("--reason", help="Why the operation failed")

    # history
    history_parser = subparsers.add_parser("history", help="List usage records")
    tenant_args(history_parser)
    history_parser.add_argument("--feature", choices=FEATURES, help="Only this feature")
    history_parser.add_argument("--limit", type=int, default=50)
    history_parser.add_argument("--offset", type=int, default=0)

    # report
    report_parser = subparsers.add_parser("report", help="Usage report")
    tenant_args(report_parser)
    report_parser.add_argument("--period", default="30d", choices=["7d", "30d", "90d", "custom"])
    report_parser.add_argument("--start", help="Start date for a custom period (YYYY-MM-DD)")
    report_parser.add_argument("--end", help="End date (YYYY-MM-DD)")

    args = parser.parse_args(argv)
    _configure_logging()

    commands = {
        "init-db": cmd_init_db,
        "costs": cmd_costs,
        "balance": cmd_balance,
        "validate": cmd_validate,
        "debit": cmd_debit,
        "refund": cmd_refund,
        "history": cmd_history,
        "report": cmd_report,
    }

    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return
    handler(args)


if __name__ == "__main__":
    main()
