from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field

from django.db import DatabaseError
from django.db.models import Count, Prefetch

from voting.codes import normalize_code
from voting.elections_services import (
    AlreadyVotedError,
    ElectionAccessDeniedError,
    ElectionCriteria,
    ElectionNotFoundError,
    ElectionNotOpenError,
    InvalidSessionError,
    StorageUnavailableError,
    fetch_election_reconciled,
    reconcile_election_statuses_or_log,
)
from voting.models import (
    ApplicationFormField,
    Ballot,
    Candidate,
    CandidateApplication,
    Election,
    Member,
    Position,
    VoterCode,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VoterSession:
    member_id: int
    organization_id: int
    election_id: int | None
    member_code: str

    @classmethod
    def from_member(cls, member: Member) -> VoterSession:
        return cls(
            member_id=member.pk,
            organization_id=member.organization_id,
            election_id=member.election_id,
            member_code=member.member_code,
        )

    def validate(self) -> None:
        if not self.member_id:
            raise InvalidSessionError("voter session has no member id")
        if not self.organization_id:
            raise InvalidSessionError("voter session has no organization id")
        if not normalize_code(self.member_code):
            raise InvalidSessionError("voter session has no member code")


@dataclass(frozen=True)
class AccessResolution:
    application_eligible: list[Election] = field(default_factory=list)
    voting_eligible: list[Election] = field(default_factory=list)


@dataclass(frozen=True)
class VoterAccountStatus:
    active_elections_count: int
    can_apply_count: int
    has_voted_count: int

    @property
    def has_active_elections(self) -> bool:
        return self.active_elections_count > 0 or self.can_apply_count > 0


def _voter_code_election_ids(*, code: str, organization_id: int) -> set[int]:
    return set(
        VoterCode.objects.filter(
            code=code,
            organization_id=organization_id,
            status__in=VoterCode.ACCESS_STATUSES,
        ).values_list("election_id", flat=True)
    )


def accessible_election_ids(session: VoterSession) -> frozenset[int]:
    """Return the ids of every election the session may see.

    That is the session's own election plus the election of each voter code
    in the session's organization that matches the member code and still
    grants access.
    """

    session.validate()

    election_ids: set[int] = set()
    if session.election_id:
        election_ids.add(int(session.election_id))

    code = normalize_code(session.member_code)
    try:
        election_ids |= _voter_code_election_ids(code=code, organization_id=session.organization_id)
    except DatabaseError as exc:
        raise StorageUnavailableError(f"Failed to load voter codes: {exc}") from exc

    return frozenset(election_ids)


def _application_eligible(
    session: VoterSession,
    *,
    election_ids: frozenset[int],
    now: datetime.datetime,
) -> list[Election]:
    qs = (
        Election.objects.accessible_to(election_ids=sorted(election_ids), organization_id=session.organization_id)
        .open_for_applications(now=now)
        .prefetch_related(
            Prefetch("positions", queryset=Position.objects.order_by("display_order", "id")),
            Prefetch(
                "application_form_fields",
                queryset=ApplicationFormField.objects.order_by("display_order", "id"),
            ),
            Prefetch(
                "applications",
                queryset=CandidateApplication.objects.filter(applicant_id=session.member_id).only(
                    "id",
                    "election_id",
                    "position_id",
                    "status",
                ),
                to_attr="member_applications",
            ),
        )
        .order_by("-start_datetime", "id")
    )
    return list(qs)


def _voting_eligible(
    session: VoterSession,
    *,
    election_ids: frozenset[int],
    now: datetime.datetime,
) -> list[Election]:
    qs = (
        Election.objects.accessible_to(election_ids=sorted(election_ids), organization_id=session.organization_id)
        .open_for_voting(now=now)
        .order_by("-start_datetime", "id")
    )
    return list(qs)


def resolve_accessible_elections(session: VoterSession, *, now: datetime.datetime) -> AccessResolution:
    """Split the session's accessible elections into apply and vote views.

    The two views are computed independently from the same accessible set,
    so an election may appear in both. This never writes; callers that want
    up-to-date statuses run a reconciliation pass first.
    """

    election_ids = accessible_election_ids(session)
    if not election_ids:
        return AccessResolution()

    try:
        application_eligible = _application_eligible(session, election_ids=election_ids, now=now)
        voting_eligible = _voting_eligible(session, election_ids=election_ids, now=now)
    except DatabaseError as exc:
        raise StorageUnavailableError(f"Failed to resolve accessible elections: {exc}") from exc

    return AccessResolution(application_eligible=application_eligible, voting_eligible=voting_eligible)


def load_voter_elections(session: VoterSession, *, now: datetime.datetime) -> AccessResolution:
    reconcile_election_statuses_or_log(now=now)
    return resolve_accessible_elections(session, now=now)


def voter_has_election_access(session: VoterSession, *, election_id: int) -> bool:
    return int(election_id) in accessible_election_ids(session)


def voter_account_status(session: VoterSession, *, now: datetime.datetime) -> VoterAccountStatus:
    reconcile_election_statuses_or_log(now=now)
    election_ids = accessible_election_ids(session)

    try:
        has_voted_count = Ballot.objects.filter(voter_id=session.member_id).count()
        if not election_ids:
            return VoterAccountStatus(active_elections_count=0, can_apply_count=0, has_voted_count=has_voted_count)

        accessible = Election.objects.accessible_to(
            election_ids=sorted(election_ids),
            organization_id=session.organization_id,
        )
        active_elections_count = accessible.open_for_voting(now=now).count()
        can_apply_count = accessible.open_for_applications(now=now).count()
    except DatabaseError as exc:
        raise StorageUnavailableError(f"Failed to load voter account status: {exc}") from exc

    return VoterAccountStatus(
        active_elections_count=active_elections_count,
        can_apply_count=can_apply_count,
        has_voted_count=has_voted_count,
    )


def load_election_for_voting(session: VoterSession, *, election_id: int, now: datetime.datetime) -> Election:
    """Return an election ready to be shown as a ballot.

    Positions come with their approved candidates only, as
    `position.approved_candidates`. A member who has already voted gets
    AlreadyVotedError instead of a second ballot.
    """

    reconcile_election_statuses_or_log(now=now)

    if not voter_has_election_access(session, election_id=election_id):
        raise ElectionAccessDeniedError("you do not have permission to vote in this election")

    try:
        election = (
            Election.objects.filter(pk=election_id, organization_id=session.organization_id)
            .open_for_voting(now=now)
            .prefetch_related(
                Prefetch(
                    "positions",
                    queryset=Position.objects.order_by("display_order", "id").prefetch_related(
                        Prefetch(
                            "candidates",
                            queryset=Candidate.objects.filter(is_approved=True).order_by("display_order", "id"),
                            to_attr="approved_candidates",
                        )
                    ),
                )
            )
            .first()
        )
        if election is None:
            raise ElectionNotOpenError("election not found or not open for voting")

        if Ballot.objects.filter(election=election, voter_id=session.member_id).exists():
            raise AlreadyVotedError("you have already voted in this election")
    except DatabaseError as exc:
        raise StorageUnavailableError(f"Failed to load ballot: {exc}") from exc

    return election


def voting_history(session: VoterSession, *, now: datetime.datetime) -> list[Ballot]:
    """The member's ballots, newest first, each with `election_ballot_count`."""

    reconcile_election_statuses_or_log(now=now)
    session.validate()

    try:
        return list(
            Ballot.objects.filter(voter_id=session.member_id)
            .select_related("election")
            .annotate(election_ballot_count=Count("election__ballots", distinct=True))
            .order_by("-created_at", "-id")
        )
    except DatabaseError as exc:
        raise StorageUnavailableError(f"Failed to load voting history: {exc}") from exc


@dataclass(frozen=True)
class CandidateResult:
    candidate_id: int
    name: str
    votes: int
    percentage: float


@dataclass(frozen=True)
class PositionResult:
    position_id: int
    name: str
    max_winners: int
    total_votes: int
    candidates: list[CandidateResult]


@dataclass(frozen=True)
class ElectionResults:
    election: Election
    total_voters: int
    votes_cast: int
    positions: list[PositionResult]

    @property
    def participation_rate(self) -> float:
        if self.total_voters <= 0:
            return 0.0
        return self.votes_cast / self.total_voters * 100


def _percentage(part: int, whole: int) -> float:
    return part / whole * 100 if whole > 0 else 0.0


def election_results(session: VoterSession, *, election_id: int, now: datetime.datetime) -> ElectionResults:
    """Vote counts for an active or closed election of the session's organization.

    Candidates are listed by votes, most first; ties keep display order.
    Participation is ballots cast over voter codes issued.
    """

    session.validate()
    criteria = ElectionCriteria(
        election_ids=frozenset({int(election_id)}),
        organization_id=session.organization_id,
        statuses=frozenset({Election.Status.active, Election.Status.closed}),
    )
    election = fetch_election_reconciled(criteria, now=now)
    if election is None:
        raise ElectionNotFoundError("election not found")

    try:
        positions = list(
            Position.objects.filter(election=election)
            .annotate(vote_count=Count("votes", distinct=True))
            .order_by("display_order", "id")
        )
        candidates = list(
            Candidate.objects.filter(election=election)
            .annotate(vote_count=Count("votes", distinct=True))
            .order_by("display_order", "id")
        )
        votes_cast = Ballot.objects.filter(election=election).count()
        total_voters = VoterCode.objects.filter(election=election).count()
    except DatabaseError as exc:
        raise StorageUnavailableError(f"Failed to load election results: {exc}") from exc

    by_position: dict[int, list[Candidate]] = {}
    for candidate in candidates:
        by_position.setdefault(candidate.position_id, []).append(candidate)

    position_results = []
    for position in positions:
        ranked = sorted(by_position.get(position.id, []), key=lambda c: c.vote_count, reverse=True)
        position_results.append(
            PositionResult(
                position_id=position.id,
                name=position.name,
                max_winners=position.max_winners,
                total_votes=position.vote_count,
                candidates=[
                    CandidateResult(
                        candidate_id=c.id,
                        name=c.name,
                        votes=c.vote_count,
                        percentage=_percentage(c.vote_count, position.vote_count),
                    )
                    for c in ranked
                ],
            )
        )

    return ElectionResults(
        election=election,
        total_voters=total_voters,
        votes_cast=votes_cast,
        positions=position_results,
    )


def member_applications(session: VoterSession, *, now: datetime.datetime) -> list[CandidateApplication]:
    reconcile_election_statuses_or_log(now=now)
    session.validate()

    try:
        return list(
            CandidateApplication.objects.filter(applicant_id=session.member_id)
            .select_related("election", "position")
            .order_by("-submitted_at", "-id")
        )
    except DatabaseError as exc:
        raise StorageUnavailableError(f"Failed to load applications: {exc}") from exc
