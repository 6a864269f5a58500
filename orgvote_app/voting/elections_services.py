from __future__ import annotations

import datetime
import logging
from collections.abc import Iterable
from dataclasses import dataclass

from django.db import DatabaseError, transaction
from django.db.models import Prefetch

from voting.models import Election, Member, Position

logger = logging.getLogger(__name__)


class ElectionError(Exception):
    pass


class StorageUnavailableError(ElectionError):
    pass


class InvalidSessionError(ElectionError):
    pass


class PartialReconciliationError(ElectionError):
    """A reconciliation pass failed after some of its steps had committed."""

    def __init__(self, message: str, *, result: ReconcileResult) -> None:
        super().__init__(message)
        self.result = result


class ElectionNotFoundError(ElectionError):
    pass


class ElectionNotOpenError(ElectionError):
    pass


class ElectionAccessDeniedError(ElectionError):
    pass


class ApplicationsClosedError(ElectionError):
    pass


class InvalidApplicationError(ElectionError):
    pass


class DuplicateApplicationError(ElectionError):
    pass


class AlreadyVotedError(ElectionError):
    pass


class InvalidBallotError(ElectionError):
    pass


@dataclass(frozen=True)
class ReconcileResult:
    activated: int = 0
    closed: int = 0
    deactivated_members: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.activated or self.closed or self.deactivated_members)


@dataclass(frozen=True)
class ElectionCriteria:
    """Filters for a reconciled election read.

    `None` means "do not filter on this attribute".
    """

    election_ids: frozenset[int] | None = None
    organization_id: int | None = None
    statuses: frozenset[str] | None = None
    candidate_method: str | None = None
    with_positions: bool = False
    order_by: tuple[str, ...] = ("-start_datetime", "id")

    def queryset(self):
        qs = Election.objects.all()
        if self.election_ids is not None:
            qs = qs.filter(id__in=sorted(self.election_ids))
        if self.organization_id is not None:
            qs = qs.filter(organization_id=self.organization_id)
        if self.statuses is not None:
            qs = qs.filter(status__in=sorted(self.statuses))
        if self.candidate_method is not None:
            qs = qs.filter(candidate_method=self.candidate_method)
        if self.with_positions:
            qs = qs.prefetch_related(Prefetch("positions", queryset=Position.objects.order_by("display_order", "id")))
        return qs.order_by(*self.order_by)


def _activate_started_elections(*, now: datetime.datetime) -> int:
    with transaction.atomic():
        ids = list(
            Election.objects.select_for_update()
            .filter(status=Election.Status.draft, start_datetime__lte=now)
            .values_list("id", flat=True)
        )
        if not ids:
            return 0
        # Guard on the source status so a concurrent pass can't re-apply the transition.
        return Election.objects.filter(id__in=ids, status=Election.Status.draft).update(
            status=Election.Status.active,
            updated_at=now,
        )


def _close_ended_elections(*, now: datetime.datetime) -> tuple[int, int]:
    """Close ended elections and deactivate their members in one transaction.

    The cascade uses exactly the ids selected here; it never re-derives the
    set of closed elections from a later read.
    """

    with transaction.atomic():
        ids = list(
            Election.objects.select_for_update()
            .filter(status=Election.Status.active, end_datetime__lt=now)
            .values_list("id", flat=True)
        )
        if not ids:
            return 0, 0

        closed = Election.objects.filter(id__in=ids, status=Election.Status.active).update(
            status=Election.Status.closed,
            updated_at=now,
        )
        deactivated = deactivate_election_members(election_ids=ids)
        return closed, deactivated


def deactivate_election_members(*, election_ids: Iterable[int]) -> int:
    ids = list(election_ids)
    if not ids:
        return 0
    return Member.objects.filter(election_id__in=ids, is_active=True).update(is_active=False)


def reconcile_election_statuses(*, now: datetime.datetime) -> ReconcileResult:
    """Bring every election's status in line with `now`.

    DRAFT elections whose start has been reached become ACTIVE; ACTIVE
    elections whose end has passed become CLOSED and their members are
    deactivated. The close step reads after the activate step commits, so an
    election whose whole window is in the past is closed in a single pass.

    Raises StorageUnavailableError if nothing was committed, or
    PartialReconciliationError if the activate step committed but the close
    step failed.
    """

    try:
        activated = _activate_started_elections(now=now)
    except DatabaseError as exc:
        logger.exception("Election reconciliation failed while activating elections now=%s", now.isoformat())
        raise StorageUnavailableError(f"Failed to activate elections: {exc}") from exc

    try:
        closed, deactivated = _close_ended_elections(now=now)
    except DatabaseError as exc:
        logger.exception("Election reconciliation failed while closing elections now=%s", now.isoformat())
        if activated:
            raise PartialReconciliationError(
                f"Activated {activated} election(s) but failed to close elections: {exc}",
                result=ReconcileResult(activated=activated),
            ) from exc
        raise StorageUnavailableError(f"Failed to close elections: {exc}") from exc

    result = ReconcileResult(activated=activated, closed=closed, deactivated_members=deactivated)
    if result.changed:
        logger.info(
            "Reconciled election statuses activated=%s closed=%s deactivated_members=%s",
            result.activated,
            result.closed,
            result.deactivated_members,
        )
    return result


def reconcile_election_statuses_or_log(*, now: datetime.datetime) -> ReconcileResult | None:
    """Run a reconciliation pass without letting a failure escape.

    Read paths call this before serving election data: when the pass fails
    they continue with whatever state is persisted.
    """

    try:
        return reconcile_election_statuses(now=now)
    except ElectionError:
        logger.warning("Serving possibly stale election statuses after failed reconciliation", exc_info=True)
        return None


def fetch_elections_reconciled(criteria: ElectionCriteria, *, now: datetime.datetime) -> list[Election]:
    reconcile_election_statuses_or_log(now=now)
    try:
        return list(criteria.queryset())
    except DatabaseError as exc:
        raise StorageUnavailableError(f"Failed to load elections: {exc}") from exc


def fetch_election_reconciled(criteria: ElectionCriteria, *, now: datetime.datetime) -> Election | None:
    reconcile_election_statuses_or_log(now=now)
    try:
        return criteria.queryset().first()
    except DatabaseError as exc:
        raise StorageUnavailableError(f"Failed to load election: {exc}") from exc


def pending_transition_counts(*, now: datetime.datetime) -> dict[str, int]:
    """Count the elections a reconciliation pass at `now` would move."""

    to_activate = Election.objects.filter(status=Election.Status.draft, start_datetime__lte=now)
    to_close = Election.objects.filter(status=Election.Status.active, end_datetime__lt=now)
    # Draft elections that are already over are activated and closed in one pass.
    already_over = to_activate.filter(end_datetime__lt=now)
    try:
        return {
            "activate": to_activate.count(),
            "close": to_close.count() + already_over.count(),
        }
    except DatabaseError as exc:
        raise StorageUnavailableError(f"Failed to count pending transitions: {exc}") from exc
