"""
Agreement Ledger Audit Tool — stored agreement integrity verification.

Connects directly to the ledger database, recomputes the content hash of
every stored agreement and reports any row that was altered after it was
written. With ``--verbose`` it also lists every agreement with its governed
artifacts and access counts.

Usage:
    python -m dataspace_negotiation.ledger.audit
    python -m dataspace_negotiation.ledger.audit --database-url sqlite:///./negotiation.db
    python -m dataspace_negotiation.ledger.audit --verbose
"""

from __future__ import annotations

import argparse
import sys
import time

from rich.console import Console
from rich.table import Table

from dataspace_negotiation.config import settings
from dataspace_negotiation.ledger.service import AgreementLedger

console = Console()


def run_audit(database_url: str, verbose: bool = False) -> bool:
    """
    Run a full agreement integrity audit.

    Args:
        database_url: SQLAlchemy connection string.
        verbose: Print the agreement listing if True.

    Returns:
        True if every stored agreement is intact, False otherwise.
    """
    console.print("\n[bold blue]═══ Agreement Ledger Integrity Audit ═══[/bold blue]\n")

    ledger = AgreementLedger(database_url)
    ledger.initialize()

    count = ledger.count_agreements()
    console.print(f"  Agreements in ledger: [bold]{count}[/bold]")

    if count == 0:
        console.print("[yellow]⚠ Ledger is empty — no agreements to verify[/yellow]")
        return True

    console.print("  Verifying content hashes...", end=" ")
    start_time = time.time()

    is_valid, verified, message = ledger.verify_integrity()

    elapsed = time.time() - start_time

    if is_valid:
        console.print("[bold green]✓ VALID[/bold green]")
        console.print(f"  Agreements verified: [bold]{verified}[/bold]")
        console.print(f"  Verification time: {elapsed:.3f}s")
    else:
        console.print("[bold red]✗ INVALID[/bold red]")
        console.print(f"  Failure at agreement: {verified}")
        console.print(f"  Reason: {message}")

    if verbose:
        console.print("\n[bold]Agreement Listing:[/bold]")
        table = Table(show_lines=True)
        table.add_column("Agreement", style="cyan")
        table.add_column("Consumer", style="yellow")
        table.add_column("Artifacts (accesses)", style="green")
        table.add_column("Valid Until", width=22)
        table.add_column("Hash (first 16)", style="dim", width=18)

        for row in ledger.list_agreements(limit=count):
            counts = {record.artifact_id: record.count for record in row.access_records}
            artifacts = "\n".join(
                f"{artifact} ({counts.get(artifact, 0)})" for artifact in row.artifact_ids
            )
            table.add_row(
                row.uri,
                row.consumer,
                artifacts or "—",
                str(row.contract_end)[:19],
                row.content_hash[:16] + "...",
            )
        console.print(table)

    console.print("\n[bold blue]═══ Audit Complete ═══[/bold blue]\n")
    return is_valid


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Dataspace connector agreement ledger integrity auditor"
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy connection string (defaults to .env settings)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show agreement listing with access counts",
    )
    args = parser.parse_args()

    db_url = args.database_url or settings.database_url
    is_valid = run_audit(db_url, verbose=args.verbose)
    sys.exit(0 if is_valid else 1)


if __name__ == "__main__":
    main()
