from __future__ import annotations

import json
import logging

from django.http import JsonResponse
from django.utils import timezone
from django.views.decorators.http import require_GET, require_POST

from voting.elections_services import (
    AlreadyVotedError,
    ApplicationsClosedError,
    DuplicateApplicationError,
    ElectionAccessDeniedError,
    ElectionError,
    ElectionNotFoundError,
    ElectionNotOpenError,
    InvalidApplicationError,
    InvalidBallotError,
    InvalidSessionError,
    StorageUnavailableError,
)
from voting.models import Election
from voting.sessions import require_voter_session
from voting.voter_access import (
    ElectionResults,
    election_results,
    load_election_for_voting,
    load_voter_elections,
    member_applications,
    voter_account_status,
    voting_history,
)
from voting.voter_services import PositionSelection, cast_ballot, submit_candidate_application

logger = logging.getLogger(__name__)

_ERROR_STATUS: dict[type[ElectionError], int] = {
    InvalidSessionError: 403,
    ElectionAccessDeniedError: 403,
    StorageUnavailableError: 503,
    ElectionNotFoundError: 404,
    ElectionNotOpenError: 400,
    ApplicationsClosedError: 400,
    InvalidApplicationError: 400,
    DuplicateApplicationError: 400,
    AlreadyVotedError: 400,
    InvalidBallotError: 400,
}


def _error_response(exc: ElectionError) -> JsonResponse:
    status = 400
    for exc_type, code in _ERROR_STATUS.items():
        if isinstance(exc, exc_type):
            status = code
            break
    if status >= 500:
        return JsonResponse({"ok": False, "error": "Election data is temporarily unavailable."}, status=status)
    return JsonResponse({"ok": False, "error": str(exc)}, status=status)


def _json_body(request) -> dict[str, object]:
    raw = request.body.decode("utf-8") if request.body else "{}"
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("request body must be a JSON object")
    return data


def _election_json(election: Election) -> dict[str, object]:
    return {
        "id": election.id,
        "title": election.title,
        "status": election.status,
        "candidate_method": election.candidate_method,
        "start_datetime": election.start_datetime.isoformat(),
        "end_datetime": election.end_datetime.isoformat(),
        "application_start_datetime": (
            election.application_start_datetime.isoformat() if election.application_start_datetime else None
        ),
        "application_end_datetime": (
            election.application_end_datetime.isoformat() if election.application_end_datetime else None
        ),
    }


def _application_election_json(election: Election) -> dict[str, object]:
    data = _election_json(election)
    data["positions"] = [{"id": p.id, "name": p.name} for p in election.positions.all()]
    data["form_fields"] = [
        {
            "id": f.id,
            "field_name": f.field_name,
            "field_type": f.field_type,
            "is_required": f.is_required,
        }
        for f in election.application_form_fields.all()
    ]
    data["my_applications"] = [
        {"id": a.id, "position_id": a.position_id, "status": a.status}
        for a in getattr(election, "member_applications", [])
    ]
    return data


@require_GET
def voter_elections(request):
    try:
        session = require_voter_session(request)
        resolution = load_voter_elections(session, now=timezone.now())
    except ElectionError as exc:
        if isinstance(exc, StorageUnavailableError):
            logger.exception("Failed to load voter elections")
        return _error_response(exc)

    return JsonResponse(
        {
            "ok": True,
            "application_eligible": [_application_election_json(e) for e in resolution.application_eligible],
            "voting_eligible": [_election_json(e) for e in resolution.voting_eligible],
        }
    )


@require_GET
def voter_status(request):
    try:
        session = require_voter_session(request)
        status = voter_account_status(session, now=timezone.now())
    except ElectionError as exc:
        if isinstance(exc, StorageUnavailableError):
            logger.exception("Failed to load voter account status")
        return _error_response(exc)

    return JsonResponse(
        {
            "ok": True,
            "has_active_elections": status.has_active_elections,
            "active_elections_count": status.active_elections_count,
            "can_apply_count": status.can_apply_count,
            "has_voted_count": status.has_voted_count,
        }
    )


@require_POST
def voter_apply(request, election_id: int):
    try:
        session = require_voter_session(request)
    except ElectionError as exc:
        return _error_response(exc)

    try:
        data = _json_body(request)
        position_id = int(data.get("position_id"))  # type: ignore[arg-type]
        responses = data.get("responses") or []
        if not isinstance(responses, list):
            raise ValueError("responses must be a list")
    except (ValueError, TypeError, json.JSONDecodeError) as exc:
        return JsonResponse({"ok": False, "error": str(exc)}, status=400)

    try:
        application = submit_candidate_application(
            session,
            election_id=election_id,
            position_id=position_id,
            responses=responses,
            now=timezone.now(),
        )
    except ElectionError as exc:
        return _error_response(exc)

    return JsonResponse(
        {
            "ok": True,
            "application_id": application.id,
            "election_id": application.election_id,
            "position_id": application.position_id,
            "status": application.status,
        },
        status=201,
    )


def _parse_selections(data: dict[str, object]) -> list[PositionSelection]:
    raw = data.get("votes")
    if not isinstance(raw, list):
        raise ValueError("votes must be a list")

    selections: list[PositionSelection] = []
    for item in raw:
        if not isinstance(item, dict):
            raise ValueError("each vote must be an object")
        candidate_ids = item.get("candidate_ids")
        if not isinstance(candidate_ids, list):
            raise ValueError("candidate_ids must be a list")
        selections.append(
            PositionSelection(
                position_id=int(item.get("position_id")),  # type: ignore[arg-type]
                candidate_ids=tuple(int(c) for c in candidate_ids),
            )
        )
    return selections


@require_POST
def voter_vote(request, election_id: int):
    try:
        session = require_voter_session(request)
    except ElectionError as exc:
        return _error_response(exc)

    try:
        selections = _parse_selections(_json_body(request))
    except (ValueError, TypeError, json.JSONDecodeError) as exc:
        return JsonResponse({"ok": False, "error": str(exc)}, status=400)

    try:
        ballot = cast_ballot(session, election_id=election_id, selections=selections, now=timezone.now())
    except ElectionError as exc:
        return _error_response(exc)

    return JsonResponse({"ok": True, "election_id": ballot.election_id, "ballot_id": ballot.id}, status=201)


@require_GET
def voter_ballot(request, election_id: int):
    try:
        session = require_voter_session(request)
        election = load_election_for_voting(session, election_id=election_id, now=timezone.now())
    except ElectionError as exc:
        if isinstance(exc, StorageUnavailableError):
            logger.exception("Failed to load ballot election=%s", election_id)
        return _error_response(exc)

    data = _election_json(election)
    data["positions"] = [
        {
            "id": p.id,
            "name": p.name,
            "min_votes": p.min_votes,
            "max_votes": p.max_votes,
            "candidates": [{"id": c.id, "name": c.name} for c in p.approved_candidates],
        }
        for p in election.positions.all()
    ]
    return JsonResponse({"ok": True, "election": data})


@require_GET
def voter_history(request):
    try:
        session = require_voter_session(request)
        ballots = voting_history(session, now=timezone.now())
    except ElectionError as exc:
        if isinstance(exc, StorageUnavailableError):
            logger.exception("Failed to load voting history")
        return _error_response(exc)

    return JsonResponse(
        {
            "ok": True,
            "ballots": [
                {
                    "id": b.id,
                    "created_at": b.created_at.isoformat(),
                    "election": _election_json(b.election),
                    "election_ballot_count": b.election_ballot_count,
                }
                for b in ballots
            ],
        }
    )


def _results_json(results: ElectionResults) -> dict[str, object]:
    return {
        "election": _election_json(results.election),
        "total_voters": results.total_voters,
        "votes_cast": results.votes_cast,
        "participation_rate": results.participation_rate,
        "positions": [
            {
                "id": p.position_id,
                "name": p.name,
                "max_winners": p.max_winners,
                "total_votes": p.total_votes,
                "candidates": [
                    {"id": c.candidate_id, "name": c.name, "votes": c.votes, "percentage": c.percentage}
                    for c in p.candidates
                ],
            }
            for p in results.positions
        ],
    }


@require_GET
def voter_results(request, election_id: int):
    try:
        session = require_voter_session(request)
        results = election_results(session, election_id=election_id, now=timezone.now())
    except ElectionError as exc:
        if isinstance(exc, StorageUnavailableError):
            logger.exception("Failed to load election results election=%s", election_id)
        return _error_response(exc)

    return JsonResponse({"ok": True, "results": _results_json(results)})


@require_GET
def voter_applications(request):
    try:
        session = require_voter_session(request)
        applications = member_applications(session, now=timezone.now())
    except ElectionError as exc:
        if isinstance(exc, StorageUnavailableError):
            logger.exception("Failed to load candidate applications")
        return _error_response(exc)

    return JsonResponse(
        {
            "ok": True,
            "applications": [
                {
                    "id": a.id,
                    "status": a.status,
                    "submitted_at": a.submitted_at.isoformat(),
                    "election": {"id": a.election_id, "title": a.election.title, "status": a.election.status},
                    "position": {"id": a.position_id, "name": a.position.name},
                }
                for a in applications
            ],
        }
    )
