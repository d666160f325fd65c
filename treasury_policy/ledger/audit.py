"""
Policy Audit Tool — Independent verification of the policy audit trail.

Connects directly to the database, recomputes every hash in the chain and
optionally lists entries, either the whole trail or one proposal's history.

Usage:
    python -m treasury_policy.ledger.audit
    python -m treasury_policy.ledger.audit --database-url sqlite:///treasury_policy.db
    python -m treasury_policy.ledger.audit --verbose
    python -m treasury_policy.ledger.audit --proposal DISBURSEMENT-123456A0B1
"""

from __future__ import annotations

import argparse
import sys
import time

from rich.console import Console
from rich.table import Table

from treasury_policy.ledger.service import AuditEntryType, AuditTrail

console = Console()

_HIGHLIGHT = {
    AuditEntryType.OVERRIDE_EXECUTED.value: "bold red",
    AuditEntryType.OVERRIDE_REJECTED.value: "bold red",
    AuditEntryType.PROPOSAL_EXECUTED.value: "green",
    AuditEntryType.PROPOSAL_REJECTED.value: "yellow",
    AuditEntryType.PROPOSAL_EXPIRED.value: "yellow",
}


def _entry_table(entries) -> Table:
    table = Table(show_lines=True)
    table.add_column("Seq", style="cyan", width=6)
    table.add_column("Type", width=22)
    table.add_column("Proposal", style="magenta", width=24)
    table.add_column("Actor", style="yellow", width=18)
    table.add_column("Hash (first 16)", style="dim", width=18)
    table.add_column("Timestamp", width=20)

    for entry in entries:
        style = _HIGHLIGHT.get(entry.entry_type, "")
        table.add_row(
            str(entry.sequence_number),
            f"[{style}]{entry.entry_type}[/{style}]" if style else entry.entry_type,
            entry.proposal_id or "—",
            entry.actor_id,
            entry.entry_hash[:16] + "...",
            str(entry.timestamp)[:19],
        )
    return table


def run_audit(
    database_url: str,
    verbose: bool = False,
    proposal_id: str | None = None,
) -> bool:
    """
    Run a full hash chain integrity audit.

    Returns:
        True if the chain is valid, False otherwise.
    """
    console.print("\n[bold blue]═══ Treasury Policy Audit ═══[/bold blue]\n")

    trail = AuditTrail(database_url)

    count = trail.get_entry_count()
    console.print(f"  Entries in audit trail: [bold]{count}[/bold]")

    if count == 0:
        console.print("[yellow]⚠ Audit trail is empty — no entries to verify[/yellow]")
        return True

    console.print("  Verifying hash chain...", end=" ")
    start_time = time.time()
    is_valid, entries_verified, message = trail.verify_chain()
    elapsed = time.time() - start_time

    if is_valid:
        console.print("[bold green]✓ VALID[/bold green]")
        console.print(f"  Entries verified: [bold]{entries_verified}[/bold]")
        console.print(f"  Verification time: {elapsed:.3f}s")
    else:
        console.print("[bold red]✗ INVALID[/bold red]")
        console.print(f"  Failure at entry: {entries_verified}")
        console.print(f"  Reason: {message}")

    if proposal_id:
        history = trail.entries_for(proposal_id)
        console.print(f"\n[bold]History of {proposal_id}:[/bold] {len(history)} entries")
        if history:
            console.print(_entry_table(history))
    elif verbose:
        console.print("\n[bold]Detailed Entry Listing:[/bold]")
        console.print(_entry_table(reversed(trail.get_latest_entries(limit=count))))

    console.print("\n[bold blue]═══ Audit Complete ═══[/bold blue]\n")
    return is_valid


def main(argv: list[str] | None = None) -> None:
    from treasury_policy.config import settings

    parser = argparse.ArgumentParser(
        description="Treasury policy audit trail integrity verifier"
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy connection string (defaults to settings)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show detailed entry listing",
    )
    parser.add_argument(
        "--proposal",
        default=None,
        help="Show the audit history of one proposal",
    )
    args = parser.parse_args(argv)

    db_url = args.database_url or settings.database_url
    is_valid = run_audit(db_url, verbose=args.verbose, proposal_id=args.proposal)
    sys.exit(0 if is_valid else 1)


if __name__ == "__main__":
    main()
