"""Time-window predicates shared by queries and in-memory checks.

Each window is available in two forms that must agree: a `Q` object for
filtering in the database and a plain predicate for a single election.
"""

from __future__ import annotations

import datetime

from django.conf import settings
from django.db.models import Q

APPLICATION_STATUSES: frozenset[str] = frozenset({"draft", "active"})


def _open_without_window() -> bool:
    return bool(getattr(settings, "ELECTION_APPLICATIONS_OPEN_WITHOUT_WINDOW", False))


def application_window_q(*, now: datetime.datetime) -> Q:
    q = (
        Q(application_start_datetime__lte=now, application_end_datetime__gte=now)
        | Q(application_start_datetime__isnull=True, application_end_datetime__gte=now)
        | Q(application_start_datetime__lte=now, application_end_datetime__isnull=True)
    )
    if _open_without_window():
        q |= Q(application_start_datetime__isnull=True, application_end_datetime__isnull=True)
    return q


def voting_window_q(*, now: datetime.datetime) -> Q:
    return Q(start_datetime__lte=now, end_datetime__gte=now)


def application_window_is_open(
    *,
    starts_at: datetime.datetime | None,
    ends_at: datetime.datetime | None,
    now: datetime.datetime,
) -> bool:
    # At least one bound must be set unless the deployment opts out.
    if starts_at is None and ends_at is None:
        return _open_without_window()
    if starts_at is not None and starts_at > now:
        return False
    if ends_at is not None and ends_at < now:
        return False
    return True


def voting_window_is_open(*, starts_at: datetime.datetime, ends_at: datetime.datetime, now: datetime.datetime) -> bool:
    return starts_at <= now <= ends_at


def election_accepts_applications(election, *, now: datetime.datetime) -> bool:
    if election.candidate_method != "application":
        return False
    if election.status not in APPLICATION_STATUSES:
        return False
    return application_window_is_open(
        starts_at=election.application_start_datetime,
        ends_at=election.application_end_datetime,
        now=now,
    )


def election_accepts_votes(election, *, now: datetime.datetime) -> bool:
    if election.status != "active":
        return False
    return voting_window_is_open(starts_at=election.start_datetime, ends_at=election.end_datetime, now=now)
