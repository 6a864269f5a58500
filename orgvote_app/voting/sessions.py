from __future__ import annotations

from django.conf import settings
from django.db import DatabaseError
from django.http import HttpRequest

from voting.elections_services import InvalidSessionError, StorageUnavailableError
from voting.models import Member, Organization
from voting.voter_access import VoterSession


def _session_key() -> str:
    return str(getattr(settings, "VOTER_SESSION_MEMBER_KEY", "_voter_member_id"))


def get_voter_session(request: HttpRequest) -> VoterSession | None:
    """Build a VoterSession for the member stored in the Django session.

    Returns None when nobody is logged in, or when the member no longer
    exists, has been deactivated, or belongs to an organization that is not
    approved.
    """

    raw_id = request.session.get(_session_key())
    try:
        member_id = int(raw_id)
    except (TypeError, ValueError):
        return None

    try:
        member = (
            Member.objects.select_related("organization")
            .only("id", "organization_id", "election_id", "member_code", "is_active", "organization__status")
            .filter(pk=member_id, is_active=True)
            .first()
        )
    except DatabaseError as exc:
        raise StorageUnavailableError(f"Failed to load voter session: {exc}") from exc
    if member is None:
        return None
    if member.organization.status != Organization.Status.approved:
        return None

    return VoterSession.from_member(member)


def require_voter_session(request: HttpRequest) -> VoterSession:
    session = get_voter_session(request)
    if session is None:
        raise InvalidSessionError("Authentication required.")
    return session
