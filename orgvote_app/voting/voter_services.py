from __future__ import annotations

import datetime
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from django.db import IntegrityError, transaction

from voting.codes import normalize_code
from voting.elections_services import (
    AlreadyVotedError,
    ApplicationsClosedError,
    DuplicateApplicationError,
    ElectionAccessDeniedError,
    ElectionNotOpenError,
    InvalidApplicationError,
    InvalidBallotError,
    reconcile_election_statuses_or_log,
)
from voting.models import (
    Ballot,
    Candidate,
    CandidateApplication,
    Election,
    Position,
    Vote,
    VoterCode,
)
from voting.voter_access import VoterSession, voter_has_election_access

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApplicationResponse:
    field_id: int
    value: str
    file_url: str | None = None

    def as_json(self) -> dict[str, object]:
        return {"field_id": self.field_id, "value": self.value, "file_url": self.file_url}


@dataclass(frozen=True)
class PositionSelection:
    position_id: int
    candidate_ids: tuple[int, ...]


def _normalize_responses(raw: Sequence[ApplicationResponse | Mapping[str, object]]) -> list[ApplicationResponse]:
    responses: list[ApplicationResponse] = []
    for item in raw:
        if isinstance(item, ApplicationResponse):
            responses.append(item)
            continue
        if not isinstance(item, Mapping):
            raise InvalidApplicationError("each response must be an object")
        try:
            field_id = int(item.get("field_id"))  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise InvalidApplicationError("every response needs a field_id") from exc
        file_url = str(item.get("file_url") or "").strip() or None
        responses.append(ApplicationResponse(field_id=field_id, value=str(item.get("value") or ""), file_url=file_url))
    return responses


def submit_candidate_application(
    session: VoterSession,
    *,
    election_id: int,
    position_id: int,
    responses: Sequence[ApplicationResponse | Mapping[str, object]],
    now: datetime.datetime,
) -> CandidateApplication:
    reconcile_election_statuses_or_log(now=now)
    return _record_application(
        session,
        election_id=election_id,
        position_id=position_id,
        responses=responses,
        now=now,
    )


@transaction.atomic
def _record_application(
    session: VoterSession,
    *,
    election_id: int,
    position_id: int,
    responses: Sequence[ApplicationResponse | Mapping[str, object]],
    now: datetime.datetime,
) -> CandidateApplication:
    election = (
        Election.objects.filter(pk=election_id, organization_id=session.organization_id)
        .open_for_applications(now=now)
        .first()
    )
    if election is None:
        raise ApplicationsClosedError("election not found or applications are closed")

    if not voter_has_election_access(session, election_id=election.id):
        raise ElectionAccessDeniedError("you do not have permission to apply for this election")

    position = Position.objects.filter(pk=position_id, election=election).first()
    if position is None:
        raise InvalidApplicationError("position not found")

    # Members may apply for only one position per election.
    existing = (
        CandidateApplication.objects.select_for_update()
        .select_related("position")
        .filter(election=election, applicant_id=session.member_id)
        .first()
    )
    if existing is not None:
        raise DuplicateApplicationError(
            f"already applied for the position of {existing.position.name} in this election"
        )

    normalized = _normalize_responses(responses)
    values_by_field = {r.field_id: r for r in normalized}
    for form_field in election.application_form_fields.all():
        if not form_field.is_required:
            continue
        response = values_by_field.get(form_field.id)
        if response is None or not response.value.strip():
            raise InvalidApplicationError(f"{form_field.field_name} is required")

    try:
        with transaction.atomic():
            application = CandidateApplication.objects.create(
                election=election,
                position=position,
                applicant_id=session.member_id,
                status=CandidateApplication.Status.pending,
                responses=[r.as_json() for r in normalized],
            )
    except IntegrityError as exc:
        # Another request created the application concurrently.
        raise DuplicateApplicationError("already applied for a position in this election") from exc

    logger.info(
        "Candidate application submitted election=%s position=%s member=%s",
        election.id,
        position.id,
        session.member_id,
    )
    return application


def _validate_selections(*, election: Election, selections: Sequence[PositionSelection]) -> None:
    if not selections:
        raise InvalidBallotError("no votes submitted")

    positions = {p.id: p for p in Position.objects.filter(election=election)}
    approved: dict[int, set[int]] = {}
    for position_id, candidate_id in Candidate.objects.filter(election=election, is_approved=True).values_list(
        "position_id",
        "id",
    ):
        approved.setdefault(position_id, set()).add(candidate_id)

    seen_positions: set[int] = set()
    for selection in selections:
        position = positions.get(selection.position_id)
        if position is None:
            raise InvalidBallotError(f"invalid position: {selection.position_id}")
        if position.id in seen_positions:
            raise InvalidBallotError(f'position "{position.name}" was submitted more than once')
        seen_positions.add(position.id)

        candidate_ids = list(selection.candidate_ids)
        if len(set(candidate_ids)) != len(candidate_ids):
            raise InvalidBallotError(f'duplicate candidate for position "{position.name}"')
        if len(candidate_ids) < position.min_votes:
            raise InvalidBallotError(f'position "{position.name}" requires at least {position.min_votes} vote(s)')
        if len(candidate_ids) > position.max_votes:
            raise InvalidBallotError(f'position "{position.name}" allows at most {position.max_votes} vote(s)')

        valid_ids = approved.get(position.id, set())
        for candidate_id in candidate_ids:
            if candidate_id not in valid_ids:
                raise InvalidBallotError(f'invalid candidate for position "{position.name}"')


def cast_ballot(
    session: VoterSession,
    *,
    election_id: int,
    selections: Sequence[PositionSelection],
    now: datetime.datetime,
) -> Ballot:
    # Elections that started or ended since the last pass must be in their
    # current state before the ballot is checked against them.
    reconcile_election_statuses_or_log(now=now)
    return _record_ballot(session, election_id=election_id, selections=selections, now=now)


@transaction.atomic
def _record_ballot(
    session: VoterSession,
    *,
    election_id: int,
    selections: Sequence[PositionSelection],
    now: datetime.datetime,
) -> Ballot:
    election = (
        Election.objects.select_for_update()
        .filter(pk=election_id, organization_id=session.organization_id)
        .open_for_voting(now=now)
        .first()
    )
    if election is None:
        raise ElectionNotOpenError("election not found or not open for voting")

    if not voter_has_election_access(session, election_id=election.id):
        raise ElectionAccessDeniedError("you do not have permission to vote in this election")

    if Ballot.objects.filter(election=election, voter_id=session.member_id).exists():
        raise AlreadyVotedError("you have already voted in this election")

    _validate_selections(election=election, selections=selections)

    voter_code = (
        VoterCode.objects.select_for_update()
        .filter(
            election=election,
            code=normalize_code(session.member_code),
            status__in=VoterCode.ACCESS_STATUSES,
        )
        .first()
    )

    try:
        with transaction.atomic():
            ballot = Ballot.objects.create(election=election, voter_id=session.member_id, voter_code=voter_code)
    except IntegrityError as exc:
        raise AlreadyVotedError("you have already voted in this election") from exc

    Vote.objects.bulk_create(
        [
            Vote(ballot=ballot, position_id=selection.position_id, candidate_id=candidate_id)
            for selection in selections
            for candidate_id in selection.candidate_ids
        ]
    )

    if voter_code is not None and voter_code.status != VoterCode.Status.used:
        voter_code.status = VoterCode.Status.used
        voter_code.used_at = now
        voter_code.save(update_fields=["status", "used_at"])

    logger.info("Ballot cast election=%s member=%s", election.id, session.member_id)
    return ballot
