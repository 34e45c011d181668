"""Operator command line.

Usage:
    python -m conversa.cli protocol create --contact-id ID --subject "..."
    python -m conversa.cli whatsapp config
    python -m conversa.cli erp sync-contacts partners.json --dry-run
    python -m conversa.cli check-columns
    python -m conversa.cli worker
"""

import argparse
import asyncio
import json
import logging
import sys
import uuid
from pathlib import Path

from sqlalchemy import inspect

import conversa.models  # noqa: F401 (registers models) with Base.metadata
from conversa.core.database import Base, SessionLocal, engine
from conversa.core.exceptions import ServiceError
from conversa.core.logging import configure_logging
from conversa.schemas.protocols import ProtocolResponse
from conversa.services import protocols as protocol_service
from conversa.services.erp import batch_sync_contacts, batch_sync_users
from conversa.services.scheduler import scheduler_loop
from conversa.services.whatsapp import (
    ProviderResult,
    WhatsAppConfig,
    WhatsAppConfigurationError,
    get_whatsapp_provider,
)
from conversa.services.worker import WorkerPool

logger = logging.getLogger(__name__)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _print_result(result: ProviderResult) -> int:
    _print_json(result.model_dump(exclude_none=True))
    return 0 if result.success else 1


def _protocol_dict(protocol) -> dict:
    return ProtocolResponse.model_validate(protocol).model_dump(mode="json")


# ---------------------------------------------------------------------------
# protocol
# ---------------------------------------------------------------------------


def cmd_protocol(args: argparse.Namespace) -> int:
    db = SessionLocal()
    try:
        if args.action == "create":
            protocol = protocol_service.create_protocol(
                db,
                contact_id=args.contact_id,
                subject=args.subject,
                description=args.description,
                priority=args.priority,
                conversation_id=args.conversation_id,
            )
            _print_json(_protocol_dict(protocol))
        elif args.action == "list":
            protocols, total = protocol_service.list_protocols(
                db, status=args.status, page=1, page_size=args.limit
            )
            for protocol in protocols:
                print(f"{protocol.protocol_number}  {protocol.status:<6}  {protocol.priority:<6}  {protocol.subject}")
            print(f"{len(protocols)} of {total} protocol(s)")
        elif args.action == "show":
            _print_json(_protocol_dict(protocol_service.get_protocol_by_number(db, args.number)))
        elif args.action == "close":
            protocol = protocol_service.get_protocol_by_number(db, args.number)
            protocol = protocol_service.close_protocol(db, protocol.id, resolution_notes=args.notes)
            _print_json(_protocol_dict(protocol))
        elif args.action == "reopen":
            protocol = protocol_service.get_protocol_by_number(db, args.number)
            protocol = protocol_service.reopen_protocol(db, protocol.id, reason=args.reason)
            _print_json(_protocol_dict(protocol))
        elif args.action == "stats":
            _print_json(protocol_service.protocol_stats(db))
    except ServiceError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    finally:
        db.close()
    return 0


# ---------------------------------------------------------------------------
# whatsapp
# ---------------------------------------------------------------------------


def cmd_whatsapp(args: argparse.Namespace) -> int:
    if args.action == "config":
        config = WhatsAppConfig.from_settings()
        print(f"API URL:          {config.base_url}")
        print(f"Phone number ID:  {config.phone_number_id or '(not set)'}")
        print(f"Business account: {config.business_account_id or '(not set)'}")
        print(f"Access token:     {'set' if config.access_token else '(not set)'}")
        if not config.is_configured:
            print("WhatsApp is not configured.", file=sys.stderr)
            return 1
        return _print_result(get_whatsapp_provider().check_configuration())

    try:
        provider = get_whatsapp_provider()
    except WhatsAppConfigurationError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    if args.action == "send-text":
        return _print_result(provider.send_text(args.phone, args.text))
    if args.action == "send-template":
        components = json.loads(args.components) if args.components else None
        return _print_result(
            provider.send_template(args.phone, args.template, components=components, language=args.language)
        )
    if args.action == "templates":
        return _print_result(provider.get_available_templates())
    return 1


# ---------------------------------------------------------------------------
# erp
# ---------------------------------------------------------------------------


def cmd_erp(args: argparse.Namespace) -> int:
    try:
        items = json.loads(Path(args.file).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        print(f"ERROR: cannot read {args.file}: {exc}", file=sys.stderr)
        return 1
    if not isinstance(items, list):
        print("ERROR: the file must contain a JSON array", file=sys.stderr)
        return 1

    sync = batch_sync_contacts if args.action == "sync-contacts" else batch_sync_users
    db = SessionLocal()
    try:
        result = sync(db, items, dry_run=args.dry_run)
    finally:
        db.close()
    _print_json(result.model_dump())
    return 0 if result.errors == 0 else 1


# ---------------------------------------------------------------------------
# check-columns
# ---------------------------------------------------------------------------


def cmd_check_columns(args: argparse.Namespace) -> int:
    """Compare the live database schema with the mapped models."""
    inspector = inspect(engine)
    existing_tables = set(inspector.get_table_names())
    missing = 0
    for table in Base.metadata.sorted_tables:
        if table.name not in existing_tables:
            print(f"[missing table] {table.name}")
            missing += 1
            continue
        columns = {column["name"] for column in inspector.get_columns(table.name)}
        for column in table.columns:
            if column.name in columns:
                print(f"[ok] {table.name}.{column.name}")
            else:
                print(f"[missing] {table.name}.{column.name}")
                missing += 1
    print("Schema matches the models." if not missing else f"{missing} missing table(s)/column(s).")
    return 0 if not missing else 1


# ---------------------------------------------------------------------------
# worker
# ---------------------------------------------------------------------------


async def _run_worker(concurrency: int | None) -> None:
    pool = WorkerPool(concurrency=concurrency)
    scheduler_task = asyncio.create_task(scheduler_loop())
    try:
        await pool.run_forever()
    finally:
        scheduler_task.cancel()


def cmd_worker(args: argparse.Namespace) -> int:
    try:
        asyncio.run(_run_worker(args.concurrency))
    except KeyboardInterrupt:
        logger.info("Worker interrupted, shutting down")
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="conversa", description="Conversa operator commands")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    # protocol
    protocol = sub.add_parser("protocol", help="Manage support protocols")
    protocol_sub = protocol.add_subparsers(dest="action", required=True)
    create = protocol_sub.add_parser("create", help="Open a protocol for a contact")
    create.add_argument("--contact-id", type=uuid.UUID, required=True)
    create.add_argument("--subject", required=True)
    create.add_argument("--description")
    create.add_argument("--priority", default="medium", choices=["low", "medium", "high", "urgent"])
    create.add_argument("--conversation-id", type=uuid.UUID)
    listing = protocol_sub.add_parser("list", help="List protocols")
    listing.add_argument("--status", choices=["open", "closed"])
    listing.add_argument("--limit", type=int, default=20)
    show = protocol_sub.add_parser("show", help="Show a protocol by number")
    show.add_argument("number")
    close = protocol_sub.add_parser("close", help="Close a protocol")
    close.add_argument("number")
    close.add_argument("--notes")
    reopen = protocol_sub.add_parser("reopen", help="Reopen a closed protocol")
    reopen.add_argument("number")
    reopen.add_argument("--reason")
    protocol_sub.add_parser("stats", help="Protocol counts by status and priority")
    protocol.set_defaults(func=cmd_protocol)

    # whatsapp
    whatsapp = sub.add_parser("whatsapp", help="WhatsApp Cloud API diagnostics")
    whatsapp_sub = whatsapp.add_subparsers(dest="action", required=True)
    whatsapp_sub.add_parser("config", help="Show and verify the provider configuration")
    send_text = whatsapp_sub.add_parser("send-text", help="Send a text message")
    send_text.add_argument("phone")
    send_text.add_argument("text")
    send_template = whatsapp_sub.add_parser("send-template", help="Send an approved template")
    send_template.add_argument("phone")
    send_template.add_argument("template")
    send_template.add_argument("--language")
    send_template.add_argument("--components", help="Template components as a JSON array")
    whatsapp_sub.add_parser("templates", help="List approved templates")
    whatsapp.set_defaults(func=cmd_whatsapp)

    # erp
    erp = sub.add_parser("erp", help="Sync contacts or agents from an ERP export")
    erp_sub = erp.add_subparsers(dest="action", required=True)
    for action in ("sync-contacts", "sync-users"):
        sync = erp_sub.add_parser(action)
        sync.add_argument("file", help="JSON file holding an array of items")
        sync.add_argument("--dry-run", action="store_true", help="Report changes without saving")
    erp.set_defaults(func=cmd_erp)

    check = sub.add_parser("check-columns", help="Check the database schema against the models")
    check.set_defaults(func=cmd_check_columns)

    worker = sub.add_parser("worker", help="Run the job worker pool and scheduler")
    worker.add_argument("--concurrency", type=int, default=None)
    worker.set_defaults(func=cmd_worker)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
