from __future__ import annotations

import datetime
from types import SimpleNamespace

from voting.eligibility import (
    application_window_is_open,
    election_accepts_applications,
    election_accepts_votes,
    voting_window_is_open,
)

T = datetime.datetime(2026, 3, 1, 12, 0, tzinfo=datetime.UTC)
HOUR = datetime.timedelta(hours=1)


def _election(**overrides) -> SimpleNamespace:
    values = {
        "status": "active",
        "candidate_method": "application",
        "application_start_datetime": T - HOUR,
        "application_end_datetime": T + HOUR,
        "start_datetime": T - HOUR,
        "end_datetime": T + HOUR,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def test_application_window_bounds_are_inclusive():
    assert application_window_is_open(starts_at=T, ends_at=T + HOUR, now=T) is True
    assert application_window_is_open(starts_at=T - HOUR, ends_at=T, now=T) is True
    assert application_window_is_open(starts_at=T + HOUR, ends_at=T + 2 * HOUR, now=T) is False
    assert application_window_is_open(starts_at=T - 2 * HOUR, ends_at=T - HOUR, now=T) is False


def test_application_window_with_one_open_bound():
    assert application_window_is_open(starts_at=None, ends_at=T + HOUR, now=T) is True
    assert application_window_is_open(starts_at=T - HOUR, ends_at=None, now=T) is True
    assert application_window_is_open(starts_at=None, ends_at=T - HOUR, now=T) is False
    assert application_window_is_open(starts_at=T + HOUR, ends_at=None, now=T) is False


def test_application_window_without_bounds_is_closed_by_default(settings):
    settings.ELECTION_APPLICATIONS_OPEN_WITHOUT_WINDOW = False
    assert application_window_is_open(starts_at=None, ends_at=None, now=T) is False


def test_application_window_without_bounds_can_be_opened(settings):
    settings.ELECTION_APPLICATIONS_OPEN_WITHOUT_WINDOW = True
    assert application_window_is_open(starts_at=None, ends_at=None, now=T) is True


def test_voting_window_is_inclusive():
    assert voting_window_is_open(starts_at=T, ends_at=T + HOUR, now=T) is True
    assert voting_window_is_open(starts_at=T - HOUR, ends_at=T, now=T) is True
    assert voting_window_is_open(starts_at=T - 2 * HOUR, ends_at=T - HOUR, now=T) is False


def test_election_accepts_applications_requires_method_and_status():
    assert election_accepts_applications(_election(), now=T) is True
    assert election_accepts_applications(_election(status="draft"), now=T) is True
    assert election_accepts_applications(_election(status="closed"), now=T) is False
    assert election_accepts_applications(_election(candidate_method="nomination"), now=T) is False


def test_election_accepts_votes_requires_active_status():
    assert election_accepts_votes(_election(), now=T) is True
    assert election_accepts_votes(_election(status="draft"), now=T) is False
    assert election_accepts_votes(_election(status="closed"), now=T) is False
    assert election_accepts_votes(_election(), now=T + 2 * HOUR) is False
