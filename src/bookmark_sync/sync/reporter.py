"""Report formatting for the command-line agent.

- ``format_sync_report`` -- post-sync summary.
- ``format_status`` -- local queue plus server status.
- ``format_history`` -- server-side sync history ledger.
- ``report_to_json`` -- structured dict for ``--json`` output.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .models import SyncOutcome

if TYPE_CHECKING:
    from .models import Counts, HistoryEntry, StatusResult, SyncReport


# ------------------------------------------------------------------
# Human-readable output
# ------------------------------------------------------------------


def format_sync_report(report: SyncReport) -> str:
    """Format a completed sync attempt as human-readable text.

    Rejected items and failed remote changes are listed individually;
    accepted items are summarised by count only.
    """
    lines: list[str] = []

    lines.append(f"Sync report for owner '{report.owner_id}'")
    lines.append(f"Started: {report.started_at}")
    if report.completed_at:
        lines.append(f"Completed: {report.completed_at}")
    lines.append(f"Outcome: {report.outcome.value}")
    lines.append("")

    if report.outcome == SyncOutcome.INITIAL_IMPORT_COMPLETE:
        imported = report.imported
        folders = imported.folders if imported else 0
        bookmarks = imported.bookmarks if imported else 0
        lines.append(
            f"Imported {folders} folders and {bookmarks} bookmarks"
        )
        if report.acknowledged:
            lines.append(
                f"Dropped {report.acknowledged} queued change(s) superseded by the import"
            )
        return "\n".join(lines).rstrip()

    lines.append(
        f"Sent {report.changes_sent} change(s): "
        f"{len(report.item_successes)} applied, "
        f"{len(report.item_errors)} rejected"
    )
    lines.append(
        f"Remote: {report.remote_applied} applied, "
        f"{len(report.remote_failed)} failed"
    )
    lines.append("")

    if report.item_errors:
        lines.append("Rejected by server:")
        for item in report.item_errors:
            kind = item.kind.value if item.kind else "?"
            lines.append(f"  {kind} {item.item_id}: {item.error}")
        lines.append("")

    if report.remote_failed:
        lines.append("Remote changes not applied:")
        for message in report.remote_failed:
            lines.append(f"  {message}")
        lines.append("")

    return "\n".join(lines).rstrip()


def format_status(
    owner_id: str,
    instance_id: str,
    pending: Counts,
    last_sync: str | None,
    remote: StatusResult | None = None,
) -> str:
    lines = [
        f"Owner:     {owner_id}",
        f"Instance:  {instance_id}",
        f"Last sync: {last_sync or 'never'}",
        (
            f"Pending:   {pending.total} "
            f"({pending.adds} adds, {pending.updates} updates, "
            f"{pending.moves} moves, {pending.deletes} deletes)"
        ),
    ]
    if remote is not None:
        lines.append(
            "Server:    "
            + (
                "initial import required"
                if remote.needs_initial_import
                else f"{remote.remote_pending.total} remote change(s) waiting"
            )
        )
    return "\n".join(lines)


def format_history(entries: list[HistoryEntry]) -> str:
    if not entries:
        return "No sync history."
    lines: list[str] = []
    for entry in entries:
        lines.append(
            f"{entry.created_at}  {entry.kind.value:<14} {entry.status.value:<8} "
            f"{entry.changes_count} change(s), "
            f"{entry.folders_processed} folders, "
            f"{entry.bookmarks_processed} bookmarks"
        )
        for error in entry.errors:
            lines.append(f"    ! {error.item_id or '-'}: {error.message}")
    return "\n".join(lines)


# ------------------------------------------------------------------
# Machine-readable output
# ------------------------------------------------------------------


def report_to_json(report: SyncReport) -> dict:
    return {
        "outcome": report.outcome.value,
        "owner_id": report.owner_id,
        "started_at": report.started_at,
        "completed_at": report.completed_at,
        "summary": report.summary(),
        "changes_sent": report.changes_sent,
        "acknowledged": report.acknowledged,
        "imported": report.imported.model_dump() if report.imported else None,
        "rejected": [
            {
                "item_id": r.item_id,
                "kind": r.kind.value if r.kind else None,
                "error": r.error,
            }
            for r in report.item_errors
        ],
        "remote_applied": report.remote_applied,
        "remote_failed": list(report.remote_failed),
    }
