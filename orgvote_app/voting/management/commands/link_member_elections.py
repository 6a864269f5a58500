from __future__ import annotations

from typing import override

from django.core.management.base import BaseCommand
from django.db import transaction

from voting.models import Member, VoterCode


class Command(BaseCommand):
    help = "Link members without an election to the election of their matching voter code."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would be done without modifying members.",
        )

    @override
    def handle(self, *args, **options) -> None:
        dry_run: bool = bool(options.get("dry_run"))

        members = list(
            Member.objects.filter(election__isnull=True).only("id", "organization_id", "member_code").order_by("id")
        )

        linked = 0
        unmatched = 0

        for member in members:
            # Member codes and voter codes are both stored normalized.
            voter_code = (
                VoterCode.objects.filter(organization_id=member.organization_id, code=member.member_code)
                .only("election_id")
                .order_by("-created_at", "-id")
                .first()
            )
            if voter_code is None:
                unmatched += 1
                continue

            if dry_run:
                self.stdout.write(f"[dry-run] Would link member {member.id} to election {voter_code.election_id}.")
                linked += 1
                continue

            with transaction.atomic():
                updated = Member.objects.filter(pk=member.pk, election__isnull=True).update(
                    election_id=voter_code.election_id
                )
            linked += updated

        prefix = "[dry-run] " if dry_run else ""
        self.stdout.write(f"{prefix}Linked {linked} member(s); {unmatched} member(s) without a matching voter code.")
