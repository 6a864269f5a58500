from __future__ import annotations

from typing import override

from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from voting.elections_services import (
    ElectionError,
    PartialReconciliationError,
    pending_transition_counts,
    reconcile_election_statuses,
)


class Command(BaseCommand):
    help = "Activate elections whose start has passed and close elections whose end has passed."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would be done without modifying elections.",
        )

    @override
    def handle(self, *args, **options) -> None:
        dry_run: bool = bool(options.get("dry_run"))

        now = timezone.now()

        if dry_run:
            try:
                counts = pending_transition_counts(now=now)
            except ElectionError as exc:
                self.stderr.write(f"Failed to count pending transitions: {exc}")
                raise CommandError("Election reconciliation dry run failed.") from exc
            self.stdout.write(
                f"[dry-run] Would activate {counts['activate']} election(s) and close {counts['close']} election(s)."
            )
            return

        try:
            result = reconcile_election_statuses(now=now)
        except PartialReconciliationError as exc:
            self.stderr.write(f"Reconciliation partially applied: {exc}")
            self.stdout.write(f"Activated {exc.result.activated} election(s); closed 0 election(s).")
            raise CommandError("Election reconciliation did not complete.") from exc
        except ElectionError as exc:
            self.stderr.write(f"Failed to reconcile elections: {exc}")
            raise CommandError("Election reconciliation failed.") from exc

        self.stdout.write(
            f"Activated {result.activated} election(s); closed {result.closed} election(s); "
            f"deactivated {result.deactivated_members} member(s)."
        )
