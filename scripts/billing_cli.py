#!/usr/bin/env python3
"""
Command-line surface for the billing & settlement core.

Every command works on behalf of one farm account and prints a JSON
document on stdout.  Typed billing errors print ``{"error": CODE, ...}`` on
stderr and exit 1.

Usage:
  python3 scripts/billing_cli.py --account-id UUID --actor-id UUID init-db
  python3 scripts/billing_cli.py ... record-payment "Ram Lal" 1200 --date 2024-01-05 --method cash
  python3 scripts/billing_cli.py ... record-payment "Ram Lal" 1200 --dry-run
  python3 scripts/billing_cli.py ... apply-credit "Ram Lal"
  python3 scripts/billing_cli.py ... override-status INVOICE_ID received
  python3 scripts/billing_cli.py ... return-advance CONTRACT_ID

Configuration comes from ``billing_config.get_active_config()`` (``$FARM_BILLING_CONFIG``,
``$DATABASE_URL``); ``--db-url`` overrides the database.
"""

import argparse
import dataclasses
import json
import sys
from datetime import date
from decimal import Decimal
from enum import Enum
from pathlib import Path
from uuid import UUID, uuid4

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _jsonable(value):
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        data = {f.name: _jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
        if hasattr(value, "total_applied"):
            data["total_applied"] = _jsonable(value.total_applied)
        return data
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(_jsonable(k)): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Farm billing: record payments, override invoice status, return contract advances",
    )
    p.add_argument("--account-id", type=UUID, required=True, help="Owning farm account")
    p.add_argument("--actor-id", type=UUID, required=True, help="User performing the action")
    p.add_argument("--db-url", default=None, help="Database URL (default: from config)")
    p.add_argument("--config", default=None, help="YAML config file (default: $FARM_BILLING_CONFIG)")

    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create tables and sequence counters")

    pay = sub.add_parser("record-payment", help="Allocate a payment oldest invoice first")
    pay.add_argument("customer")
    pay.add_argument("amount")
    pay.add_argument("--date", type=date.fromisoformat, default=None)
    pay.add_argument("--method", default=None)
    pay.add_argument("--dry-run", action="store_true", help="Show the breakdown without saving")

    credit = sub.add_parser("apply-credit", help="Spend a customer's open credit")
    credit.add_argument("customer")
    credit.add_argument("--date", type=date.fromisoformat, default=None)
    credit.add_argument("--dry-run", action="store_true")

    override = sub.add_parser("override-status", help="Force an invoice status")
    override.add_argument("invoice_id", type=UUID)
    override.add_argument("status")

    ret = sub.add_parser("return-advance", help="Return a contract advance and complete it")
    ret.add_argument("contract_id", type=UUID)
    ret.add_argument("--date", type=date.fromisoformat, default=None)

    return p.parse_args(argv)


def _run(args: argparse.Namespace, config) -> object:
    from billing_kernel.db.engine import create_tables, get_session
    from billing_modules.contracts.service import ContractAdvanceLedger
    from billing_modules.invoicing.service import InvoiceStore
    from billing_modules.settlement.service import SettlementService

    if args.command == "init-db":
        create_tables()
        return {"status": "ok"}

    session = get_session()
    try:
        if args.command == "record-payment":
            return SettlementService(session, args.account_id, config=config).allocate(
                args.customer,
                args.amount,
                args.date,
                args.method,
                actor_id=args.actor_id,
                simulate=args.dry_run,
            )
        if args.command == "apply-credit":
            return SettlementService(session, args.account_id, config=config).apply_credit(
                args.customer, args.date, actor_id=args.actor_id, simulate=args.dry_run,
            )
        if args.command == "override-status":
            return InvoiceStore(session, args.account_id, config=config).set_status_manually(
                args.invoice_id, args.status, actor_id=args.actor_id,
            )
        if args.command == "return-advance":
            return ContractAdvanceLedger(session, args.account_id, config=config).return_advance(
                args.contract_id, actor_id=args.actor_id, returned_date=args.date,
            )
        raise AssertionError(f"unhandled command {args.command}")
    finally:
        session.close()


def main(argv=None) -> int:
    args = _parse_args(argv)

    from billing_config import get_active_config, load_config
    from billing_kernel.db.engine import init_engine_from_url
    from billing_kernel.exceptions import BillingKernelError
    from billing_kernel.logging_config import LogContext, configure_logging, get_logger

    config = load_config(args.config) if args.config else get_active_config()
    configure_logging(level=config.log_level.upper())
    init_engine_from_url(args.db_url or config.database_url)
    logger = get_logger("cli")

    # One id per invocation ties its service log lines together
    with LogContext.bind(correlation_id=uuid4(), account_id=args.account_id, actor_id=args.actor_id):
        logger.info("cli_command_started", extra={"command": args.command})
        try:
            result = _run(args, config)
        except BillingKernelError as exc:
            logger.warning("cli_command_rejected", extra={"command": args.command, "code": exc.code})
            error = {"error": exc.code, "message": str(exc)}
            error.update({k: _jsonable(v) for k, v in vars(exc).items() if not k.startswith("_")})
            print(json.dumps(error, indent=2), file=sys.stderr)
            return 1

    body = _jsonable(result)
    if isinstance(body, dict):
        body.setdefault("currency", config.settlement_currency)
    print(json.dumps(body, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
