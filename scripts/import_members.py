#!/usr/bin/env python3
"""
Import members from a CSV file into one company.

Usage:
    python scripts/import_members.py --company-code ACME --actor-email admin@local.test --file members.csv
    python scripts/import_members.py ... --dry-run
    python scripts/import_members.py ... --batched --auto-fix
    python scripts/import_members.py --company-code ACME --actor-email admin@local.test --rollback <entry-id>
    python scripts/import_members.py --company-code ACME --cleanup
"""

import argparse
import sys
import uuid
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from sqlalchemy import select
from sqlalchemy.orm import Session

from provisioning.core.config import settings
from provisioning.core.logging_config import configure_logging
from provisioning.db.session import SessionLocal
from provisioning.models.company import Company
from provisioning.models.member import Member
from provisioning.schemas.imports import ExecutionResult, PreviewResult, UpsertOptions
from provisioning.services.errors import ImportAborted, ProvisioningError
from provisioning.services.hashing import WerkzeugCredentialHasher
from provisioning.services.import_engine import EngineConfig, ImportContext, ImportEngine
from provisioning.services.recovery import generate_recovery_suggestions


def resolve_context(db: Session, company_code: str, actor_email: str | None, file_name: str) -> ImportContext:
    company = db.execute(select(Company).where(Company.code == company_code)).scalar_one_or_none()
    if company is None:
        raise SystemExit(f"❌ Error: Company not found: {company_code}")

    actor_id = None
    if actor_email:
        actor = db.execute(
            select(Member).where(Member.company_id == company.id, Member.email == actor_email)
        ).scalar_one_or_none()
        if actor is None:
            raise SystemExit(f"❌ Error: Member {actor_email} not found in {company_code}")
        actor_id = actor.id
    return ImportContext(company_id=company.id, actor_id=actor_id, file_name=file_name)


def print_preview(result: PreviewResult, verbose: bool) -> None:
    if not result.success:
        print("❌ File rejected:")
        for err in [*result.global_errors, *result.parse_errors]:
            print(f"   - {err}")
        return

    print("\n=== Preview ===")
    print(f"Rows:     {result.total_rows} ({result.valid_rows} valid, {result.invalid_rows} invalid)")
    print(f"Creates:  {result.create_count}")
    print(f"Updates:  {result.update_count}")
    for row in result.rows:
        if row.validation_errors or verbose:
            marker = "✗" if row.validation_errors else "✓"
            print(f"  {marker} line {row.line_number} {row.action:<6} {row.name or '?'}")
            for msg in row.validation_errors:
                print(f"      - {msg}")


def print_result(result: ExecutionResult, verbose: bool) -> None:
    print("\n=== Import Summary ===")
    print(result.message)
    print(f"Created:  {result.created}")
    print(f"Updated:  {result.updated}")
    print(f"Failed:   {result.failed}")
    print(f"Skipped:  {result.skipped}")
    if result.audit_entry_id:
        print(f"Audit entry: {result.audit_entry_id} (use --rollback to undo)")

    for err in result.critical_errors:
        print(f"  ‼ {err.kind}: {err.message}")
    if result.recoverable_errors:
        suggestions = generate_recovery_suggestions(result.recoverable_errors)
        print(f"\n{len(result.recoverable_errors)} recoverable error(s):")
        for err in result.recoverable_errors:
            print(f"  - row {err.row_index} {err.name}: [{err.kind}] {err.message}")
            if verbose and err.suggested_fix:
                print(f"      fix: {err.suggested_fix}")
        if suggestions.enable_auto_fix:
            print("Hint: re-run with --auto-fix to regenerate weak credentials")
        if suggestions.import_managers_first:
            print("Hint: import managers before the members that report to them")


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(description="Import members from a CSV file")
    parser.add_argument("--company-code", required=True, help="Code of the company to import into")
    parser.add_argument("--actor-email", help="Email of the admin recorded as the actor")
    parser.add_argument("--file", type=Path, help="CSV file to import")
    parser.add_argument("--dry-run", action="store_true", help="Preview only, write nothing")
    parser.add_argument("--batched", action="store_true", help="Force chunked execution")
    parser.add_argument("--auto-fix", action="store_true", help="Regenerate credentials that fail policy")
    parser.add_argument("--rollback", metavar="ENTRY_ID", help="Roll back a previous import")
    parser.add_argument("--cleanup", action="store_true", help="Delete audit entries past retention")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    args = parser.parse_args()

    configure_logging("DEBUG" if args.verbose else settings.LOG_LEVEL)

    if not (args.file or args.rollback or args.cleanup):
        parser.error("one of --file, --rollback or --cleanup is required")
    if args.file and not args.file.exists():
        print(f"❌ Error: File not found: {args.file}")
        sys.exit(1)

    db = SessionLocal()
    try:
        ctx = resolve_context(
            db, args.company_code, args.actor_email, args.file.name if args.file else "import.csv"
        )
        engine = ImportEngine(
            db,
            config=EngineConfig.from_settings(settings),
            hasher=WerkzeugCredentialHasher(settings.PASSWORD_HASH_METHOD),
        )

        if args.cleanup:
            deleted = engine.cleanup_old_entries(ctx.company_id)
            print(f"Removed {deleted} audit entries older than {settings.AUDIT_RETENTION_DAYS} days")
            return

        if args.rollback:
            result = engine.rollback(ctx, uuid.UUID(args.rollback))
            print(f"Rolled back {result.rolled_back_records} member(s): "
                  f"{result.deleted} deleted, {result.reverted} reverted")
            return

        data = args.file.read_bytes()
        if args.dry_run:
            preview = engine.preview(ctx, data)
            print_preview(preview, args.verbose)
            sys.exit(0 if preview.success else 1)

        options = UpsertOptions(use_batching=args.batched, auto_fix_credentials=args.auto_fix)
        try:
            result = engine.execute_batched(ctx, data, options)
        except ImportAborted as exc:
            result = exc.result
        print_result(result, args.verbose)
        if not result.success:
            sys.exit(1)

    except ProvisioningError as e:
        print(f"\n❌ Error: {e}")
        sys.exit(1)
    except Exception as e:
        print(f"\n❌ Error: {e}")
        if args.verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    main()
