from __future__ import annotations

import datetime
from typing import override

from django.db import models

from voting.codes import normalize_code
from voting.eligibility import APPLICATION_STATUSES, application_window_q, voting_window_q


class Organization(models.Model):
    class Status(models.TextChoices):
        pending = "pending", "Pending"
        approved = "approved", "Approved"
        rejected = "rejected", "Rejected"

    name = models.CharField(max_length=255)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.pending)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("name", "id")

    def __str__(self) -> str:
        return f"{self.name}"


class ElectionQuerySet(models.QuerySet):
    """Typed filters shared by the lifecycle engine and the access resolver.

    Uses raw status strings because ElectionQuerySet must be defined before
    Election (Django's as_manager() requires it). The values match
    Election.Status below.
    """

    def accessible_to(self, *, election_ids, organization_id: int) -> ElectionQuerySet:
        return self.filter(id__in=list(election_ids), organization_id=organization_id)

    def open_for_applications(self, *, now: datetime.datetime) -> ElectionQuerySet:
        return self.filter(
            application_window_q(now=now),
            candidate_method="application",
            status__in=sorted(APPLICATION_STATUSES),
        )

    def open_for_voting(self, *, now: datetime.datetime) -> ElectionQuerySet:
        return self.filter(voting_window_q(now=now), status="active")


class Election(models.Model):
    class Status(models.TextChoices):
        draft = "draft", "Draft"
        active = "active", "Active"
        closed = "closed", "Closed"

    class CandidateMethod(models.TextChoices):
        application = "application", "Application"
        nomination = "nomination", "Nomination"

    organization = models.ForeignKey(Organization, on_delete=models.CASCADE, related_name="elections")
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.draft)
    candidate_method = models.CharField(
        max_length=16,
        choices=CandidateMethod.choices,
        default=CandidateMethod.nomination,
    )

    # Either bound may be left open; see voting.eligibility.
    application_start_datetime = models.DateTimeField(blank=True, null=True)
    application_end_datetime = models.DateTimeField(blank=True, null=True)

    start_datetime = models.DateTimeField()
    end_datetime = models.DateTimeField()

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = ElectionQuerySet.as_manager()

    class Meta:
        ordering = ("-start_datetime", "id")
        indexes = [
            models.Index(fields=["status", "start_datetime"], name="election_status_start"),
            models.Index(fields=["status", "end_datetime"], name="election_status_end"),
        ]

    def __str__(self) -> str:
        return self.title


class Position(models.Model):
    election = models.ForeignKey(Election, on_delete=models.CASCADE, related_name="positions")
    name = models.CharField(max_length=255)
    display_order = models.PositiveIntegerField(default=0)
    min_votes = models.PositiveSmallIntegerField(default=0)
    max_votes = models.PositiveSmallIntegerField(default=1)
    max_winners = models.PositiveSmallIntegerField(default=1)

    class Meta:
        ordering = ("display_order", "id")

    def __str__(self) -> str:
        return f"{self.election_id}:{self.name}"


class Candidate(models.Model):
    election = models.ForeignKey(Election, on_delete=models.CASCADE, related_name="candidates")
    position = models.ForeignKey(Position, on_delete=models.CASCADE, related_name="candidates")
    name = models.CharField(max_length=255)
    is_approved = models.BooleanField(default=False)
    display_order = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ("display_order", "id")

    def __str__(self) -> str:
        return self.name


class ApplicationFormField(models.Model):
    class FieldType(models.TextChoices):
        text = "text", "Text"
        textarea = "textarea", "Text area"
        file = "file", "File"

    election = models.ForeignKey(Election, on_delete=models.CASCADE, related_name="application_form_fields")
    field_name = models.CharField(max_length=255)
    field_type = models.CharField(max_length=16, choices=FieldType.choices, default=FieldType.text)
    is_required = models.BooleanField(default=False)
    display_order = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ("display_order", "id")

    def __str__(self) -> str:
        return f"{self.election_id}:{self.field_name}"


class Member(models.Model):
    organization = models.ForeignKey(Organization, on_delete=models.CASCADE, related_name="members")
    # Nullable: older accounts were created before members were linked to elections.
    election = models.ForeignKey(
        Election,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name="members",
    )
    member_code = models.CharField(max_length=64, unique=True)
    full_name = models.CharField(max_length=255, blank=True, default="")
    email = models.EmailField(blank=True, default="")
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["election", "is_active"], name="member_el_active"),
        ]

    def __str__(self) -> str:
        return self.member_code

    @override
    def save(self, *args, **kwargs) -> None:
        self.member_code = normalize_code(self.member_code)
        super().save(*args, **kwargs)


class VoterCode(models.Model):
    class Status(models.TextChoices):
        unused = "unused", "Unused"
        used = "used", "Used"
        revoked = "revoked", "Revoked"
        expired = "expired", "Expired"

    # Codes in any other state no longer grant access to their election.
    ACCESS_STATUSES: tuple[str, ...] = (Status.unused, Status.used)

    organization = models.ForeignKey(Organization, on_delete=models.CASCADE, related_name="voter_codes")
    election = models.ForeignKey(Election, on_delete=models.CASCADE, related_name="voter_codes")
    code = models.CharField(max_length=64)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.unused)
    used_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["election", "code"], name="uniq_votercode_election_code"),
        ]
        indexes = [
            models.Index(fields=["organization", "code", "status"], name="votercode_org_code_st"),
        ]

    def __str__(self) -> str:
        return f"{self.election_id}:{self.code}"

    @override
    def save(self, *args, **kwargs) -> None:
        self.code = normalize_code(self.code)
        super().save(*args, **kwargs)


class CandidateApplication(models.Model):
    class Status(models.TextChoices):
        pending = "pending", "Pending"
        approved = "approved", "Approved"
        rejected = "rejected", "Rejected"

    election = models.ForeignKey(Election, on_delete=models.CASCADE, related_name="applications")
    position = models.ForeignKey(Position, on_delete=models.CASCADE, related_name="applications")
    applicant = models.ForeignKey(Member, on_delete=models.CASCADE, related_name="applications")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.pending, db_index=True)
    # List of {"field_id": int, "value": str, "file_url": str | None}.
    responses = models.JSONField(blank=True, default=list)
    submitted_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["election", "applicant"],
                name="uniq_application_election_applicant",
            ),
        ]
        ordering = ("-submitted_at",)

    def __str__(self) -> str:
        return f"{self.applicant_id} → {self.position_id}"


class Ballot(models.Model):
    election = models.ForeignKey(Election, on_delete=models.CASCADE, related_name="ballots")
    voter = models.ForeignKey(Member, on_delete=models.CASCADE, related_name="ballots")
    voter_code = models.ForeignKey(
        VoterCode,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name="ballots",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["election", "voter"], name="uniq_ballot_election_voter"),
        ]
        indexes = [
            models.Index(fields=["election", "created_at"], name="ballot_el_at"),
        ]

    def __str__(self) -> str:
        return f"ballot:{self.election_id}:{self.voter_id}"


class Vote(models.Model):
    ballot = models.ForeignKey(Ballot, on_delete=models.CASCADE, related_name="votes")
    position = models.ForeignKey(Position, on_delete=models.CASCADE, related_name="votes")
    candidate = models.ForeignKey(Candidate, on_delete=models.CASCADE, related_name="votes")

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["ballot", "position", "candidate"],
                name="uniq_vote_ballot_position_candidate",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.ballot_id}:{self.candidate_id}"

