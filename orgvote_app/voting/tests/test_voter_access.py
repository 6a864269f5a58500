from __future__ import annotations

from unittest.mock import patch

from django.db import DatabaseError
from django.test import TestCase, override_settings

from voting.elections_services import (
    AlreadyVotedError,
    ElectionAccessDeniedError,
    ElectionNotFoundError,
    ElectionNotOpenError,
    InvalidSessionError,
    StorageUnavailableError,
)
from voting.models import (
    ApplicationFormField,
    Ballot,
    Candidate,
    CandidateApplication,
    Election,
    Position,
    Vote,
    VoterCode,
)
from voting.tests.factories import (
    HOUR,
    T,
    make_election,
    make_member,
    make_organization,
    make_voter_code,
)
from voting.voter_access import (
    AccessResolution,
    VoterSession,
    accessible_election_ids,
    election_results,
    load_election_for_voting,
    load_voter_elections,
    member_applications,
    resolve_accessible_elections,
    voter_account_status,
    voter_has_election_access,
    voting_history,
)


class AccessibleElectionIdsTests(TestCase):
    def setUp(self) -> None:
        self.org = make_organization()
        self.other_org = make_organization(name="Other Org")

    def test_primary_election_is_accessible(self) -> None:
        election = make_election(self.org)
        member = make_member(self.org, election=election)

        self.assertEqual(accessible_election_ids(VoterSession.from_member(member)), frozenset({election.id}))

    def test_matching_voter_code_grants_access(self) -> None:
        primary = make_election(self.org, title="Primary")
        extra = make_election(self.org, title="Extra")
        member = make_member(self.org, election=primary, member_code="mem 0042")
        make_voter_code(extra, code=" MEM0042 ")

        ids = accessible_election_ids(VoterSession.from_member(member))

        self.assertEqual(ids, frozenset({primary.id, extra.id}))

    def test_used_voter_code_still_grants_access(self) -> None:
        election = make_election(self.org)
        member = make_member(self.org, member_code="MEM0042")
        make_voter_code(election, code="MEM0042", status=VoterCode.Status.used)

        self.assertEqual(accessible_election_ids(VoterSession.from_member(member)), frozenset({election.id}))

    def test_revoked_and_expired_voter_codes_are_ignored(self) -> None:
        revoked = make_election(self.org, title="Revoked")
        expired = make_election(self.org, title="Expired")
        member = make_member(self.org, member_code="MEM0042")
        make_voter_code(revoked, code="MEM0042", status=VoterCode.Status.revoked)
        make_voter_code(expired, code="MEM0042", status=VoterCode.Status.expired)

        self.assertEqual(accessible_election_ids(VoterSession.from_member(member)), frozenset())

    def test_voter_codes_from_other_organizations_are_ignored(self) -> None:
        foreign = make_election(self.other_org)
        member = make_member(self.org, member_code="MEM0042")
        make_voter_code(foreign, code="MEM0042")

        self.assertEqual(accessible_election_ids(VoterSession.from_member(member)), frozenset())

    def test_adding_a_voter_code_never_removes_access(self) -> None:
        primary = make_election(self.org, title="Primary")
        extra = make_election(self.org, title="Extra")
        member = make_member(self.org, election=primary, member_code="MEM0042")
        session = VoterSession.from_member(member)

        before = accessible_election_ids(session)
        make_voter_code(extra, code="MEM0042")
        make_voter_code(primary, code="MEM0042")
        after = accessible_election_ids(session)

        self.assertTrue(before <= after)
        self.assertEqual(after, frozenset({primary.id, extra.id}))

    def test_session_without_member_code_is_rejected(self) -> None:
        session = VoterSession(member_id=1, organization_id=self.org.id, election_id=None, member_code="  ")

        with self.assertRaises(InvalidSessionError):
            accessible_election_ids(session)

    def test_session_without_organization_is_rejected(self) -> None:
        session = VoterSession(member_id=1, organization_id=0, election_id=None, member_code="MEM0042")

        with self.assertRaises(InvalidSessionError):
            accessible_election_ids(session)

    def test_voter_code_lookup_failure_raises_storage_unavailable(self) -> None:
        member = make_member(self.org)

        with patch("voting.voter_access._voter_code_election_ids", side_effect=DatabaseError("connection lost")):
            with self.assertRaises(StorageUnavailableError):
                accessible_election_ids(VoterSession.from_member(member))

    def test_voter_has_election_access(self) -> None:
        election = make_election(self.org)
        other = make_election(self.org, title="Other")
        member = make_member(self.org, election=election)
        session = VoterSession.from_member(member)

        self.assertTrue(voter_has_election_access(session, election_id=election.id))
        self.assertFalse(voter_has_election_access(session, election_id=other.id))


class ResolveAccessibleElectionsTests(TestCase):
    def setUp(self) -> None:
        self.org = make_organization()

    def _application_election(self, **kwargs) -> Election:
        values = {
            "candidate_method": Election.CandidateMethod.application,
            "application_start": T - HOUR,
            "application_end": T + HOUR,
            "start": T + 2 * HOUR,
            "end": T + 3 * HOUR,
        }
        values.update(kwargs)
        return make_election(self.org, **values)

    def test_open_application_window_is_application_eligible(self) -> None:
        election = self._application_election()
        member = make_member(self.org, election=election)

        resolution = resolve_accessible_elections(VoterSession.from_member(member), now=T)

        self.assertEqual([e.id for e in resolution.application_eligible], [election.id])
        self.assertEqual(resolution.voting_eligible, [])

    def test_draft_election_accepts_applications(self) -> None:
        election = self._application_election(status=Election.Status.draft)
        member = make_member(self.org, election=election)

        resolution = resolve_accessible_elections(VoterSession.from_member(member), now=T)

        self.assertEqual([e.id for e in resolution.application_eligible], [election.id])

    def test_half_open_application_windows(self) -> None:
        no_start = self._application_election(title="No start", application_start=None)
        no_end = self._application_election(title="No end", application_end=None)
        member = make_member(self.org, member_code="MEM0042")
        make_voter_code(no_start, code="MEM0042")
        make_voter_code(no_end, code="MEM0042")

        resolution = resolve_accessible_elections(VoterSession.from_member(member), now=T)

        self.assertEqual({e.id for e in resolution.application_eligible}, {no_start.id, no_end.id})

    def test_missing_application_window_is_not_eligible(self) -> None:
        election = self._application_election(application_start=None, application_end=None)
        member = make_member(self.org, election=election)

        resolution = resolve_accessible_elections(VoterSession.from_member(member), now=T)

        self.assertEqual(resolution.application_eligible, [])

    @override_settings(ELECTION_APPLICATIONS_OPEN_WITHOUT_WINDOW=True)
    def test_missing_application_window_can_be_opened_by_setting(self) -> None:
        election = self._application_election(application_start=None, application_end=None)
        member = make_member(self.org, election=election)

        resolution = resolve_accessible_elections(VoterSession.from_member(member), now=T)

        self.assertEqual([e.id for e in resolution.application_eligible], [election.id])

    def test_nomination_and_closed_elections_do_not_accept_applications(self) -> None:
        nomination = self._application_election(
            title="Nomination",
            candidate_method=Election.CandidateMethod.nomination,
        )
        closed = self._application_election(title="Closed", status=Election.Status.closed)
        member = make_member(self.org, member_code="MEM0042")
        make_voter_code(nomination, code="MEM0042")
        make_voter_code(closed, code="MEM0042")

        resolution = resolve_accessible_elections(VoterSession.from_member(member), now=T)

        self.assertEqual(resolution.application_eligible, [])

    def test_active_election_in_voting_window_is_voting_eligible(self) -> None:
        election = make_election(self.org, start=T - HOUR, end=T + HOUR)
        member = make_member(self.org, election=election)

        resolution = resolve_accessible_elections(VoterSession.from_member(member), now=T)

        self.assertEqual([e.id for e in resolution.voting_eligible], [election.id])

    def test_draft_election_in_voting_window_is_not_voting_eligible(self) -> None:
        election = make_election(self.org, status=Election.Status.draft, start=T - HOUR, end=T + HOUR)
        member = make_member(self.org, election=election)

        resolution = resolve_accessible_elections(VoterSession.from_member(member), now=T)

        self.assertEqual(resolution.voting_eligible, [])

    def test_election_can_be_in_both_lists(self) -> None:
        election = make_election(
            self.org,
            candidate_method=Election.CandidateMethod.application,
            application_start=T - HOUR,
            application_end=T + HOUR,
            start=T - HOUR,
            end=T + HOUR,
        )
        member = make_member(self.org, election=election)

        resolution = resolve_accessible_elections(VoterSession.from_member(member), now=T)

        self.assertEqual([e.id for e in resolution.application_eligible], [election.id])
        self.assertEqual([e.id for e in resolution.voting_eligible], [election.id])

    def test_no_accessible_elections_returns_empty_lists(self) -> None:
        make_election(self.org)
        member = make_member(self.org)

        resolution = resolve_accessible_elections(VoterSession.from_member(member), now=T)

        self.assertEqual(resolution, AccessResolution())

    def test_application_eligible_elections_are_enriched(self) -> None:
        election = self._application_election()
        second = Position.objects.create(election=election, name="Treasurer", display_order=2)
        first = Position.objects.create(election=election, name="Chair", display_order=1)
        ApplicationFormField.objects.create(election=election, field_name="Statement", display_order=1)
        member = make_member(self.org, election=election)
        other_member = make_member(self.org, election=election)
        own = CandidateApplication.objects.create(election=election, position=first, applicant=member)
        CandidateApplication.objects.create(election=election, position=second, applicant=other_member)

        resolution = resolve_accessible_elections(VoterSession.from_member(member), now=T)

        [enriched] = resolution.application_eligible
        self.assertEqual([p.id for p in enriched.positions.all()], [first.id, second.id])
        self.assertEqual([f.field_name for f in enriched.application_form_fields.all()], ["Statement"])
        self.assertEqual([a.id for a in enriched.member_applications], [own.id])

    def test_resolution_failure_raises_storage_unavailable(self) -> None:
        election = make_election(self.org)
        member = make_member(self.org, election=election)

        with patch("voting.voter_access._voting_eligible", side_effect=DatabaseError("connection lost")):
            with self.assertRaises(StorageUnavailableError):
                resolve_accessible_elections(VoterSession.from_member(member), now=T)


class LoadVoterElectionsTests(TestCase):
    def setUp(self) -> None:
        self.org = make_organization()

    def test_ended_election_is_closed_and_dropped(self) -> None:
        election = make_election(self.org, start=T - HOUR, end=T + HOUR)
        member = make_member(self.org, election=election)
        session = VoterSession.from_member(member)

        self.assertEqual([e.id for e in load_voter_elections(session, now=T).voting_eligible], [election.id])

        resolution = load_voter_elections(session, now=T + 2 * HOUR)

        self.assertEqual(resolution.voting_eligible, [])
        election.refresh_from_db()
        self.assertEqual(election.status, Election.Status.closed)

    def test_started_draft_election_becomes_voting_eligible(self) -> None:
        election = make_election(self.org, status=Election.Status.draft, start=T - HOUR, end=T + HOUR)
        member = make_member(self.org, election=election)

        resolution = load_voter_elections(VoterSession.from_member(member), now=T)

        self.assertEqual([e.id for e in resolution.voting_eligible], [election.id])

    def test_reconciliation_failure_does_not_block_the_read(self) -> None:
        election = make_election(self.org, start=T - HOUR, end=T + HOUR)
        member = make_member(self.org, election=election)

        with (
            patch(
                "voting.elections_services._activate_started_elections",
                side_effect=DatabaseError("connection lost"),
            ),
            self.assertLogs("voting.elections_services", level="WARNING"),
        ):
            resolution = load_voter_elections(VoterSession.from_member(member), now=T)

        self.assertEqual([e.id for e in resolution.voting_eligible], [election.id])


class VoterAccountStatusTests(TestCase):
    def test_counts_open_elections_and_ballots(self) -> None:
        org = make_organization()
        voting = make_election(org, title="Voting", start=T - HOUR, end=T + HOUR)
        applying = make_election(
            org,
            title="Applying",
            candidate_method=Election.CandidateMethod.application,
            application_start=T - HOUR,
            application_end=T + HOUR,
            start=T + 2 * HOUR,
            end=T + 3 * HOUR,
        )
        member = make_member(org, election=voting, member_code="MEM0042")
        make_voter_code(applying, code="MEM0042")
        Ballot.objects.create(election=voting, voter=member)

        status = voter_account_status(VoterSession.from_member(member), now=T)

        self.assertEqual(status.active_elections_count, 1)
        self.assertEqual(status.can_apply_count, 1)
        self.assertEqual(status.has_voted_count, 1)
        self.assertTrue(status.has_active_elections)

    def test_member_without_elections_has_nothing_active(self) -> None:
        org = make_organization()
        member = make_member(org)

        status = voter_account_status(VoterSession.from_member(member), now=T)

        self.assertFalse(status.has_active_elections)
        self.assertEqual(status.has_voted_count, 0)

    def test_started_draft_election_counts_as_active(self) -> None:
        org = make_organization()
        election = make_election(org, status=Election.Status.draft, start=T - HOUR, end=T + HOUR)
        member = make_member(org, election=election)
        session = VoterSession.from_member(member)

        status = voter_account_status(session, now=T)

        self.assertEqual(status.active_elections_count, 1)
        self.assertEqual(
            status.active_elections_count,
            len(load_voter_elections(session, now=T).voting_eligible),
        )


class LoadElectionForVotingTests(TestCase):
    def setUp(self) -> None:
        self.org = make_organization()
        self.election = make_election(self.org, start=T - HOUR, end=T + HOUR)
        self.board = Position.objects.create(election=self.election, name="Board", display_order=2)
        self.chair = Position.objects.create(election=self.election, name="Chair", display_order=1)
        self.bob = Candidate.objects.create(
            election=self.election,
            position=self.chair,
            name="Bob",
            is_approved=True,
            display_order=2,
        )
        self.alice = Candidate.objects.create(
            election=self.election,
            position=self.chair,
            name="Alice",
            is_approved=True,
            display_order=1,
        )
        Candidate.objects.create(election=self.election, position=self.chair, name="Pending")
        self.member = make_member(self.org, election=self.election)
        self.session = VoterSession.from_member(self.member)

    def test_ballot_lists_positions_and_approved_candidates_in_order(self) -> None:
        election = load_election_for_voting(self.session, election_id=self.election.id, now=T)

        positions = list(election.positions.all())
        self.assertEqual([p.id for p in positions], [self.chair.id, self.board.id])
        self.assertEqual([c.id for c in positions[0].approved_candidates], [self.alice.id, self.bob.id])
        self.assertEqual(positions[1].approved_candidates, [])

    def test_member_who_voted_gets_no_ballot(self) -> None:
        Ballot.objects.create(election=self.election, voter=self.member)

        with self.assertRaises(AlreadyVotedError):
            load_election_for_voting(self.session, election_id=self.election.id, now=T)

    def test_member_without_access_gets_no_ballot(self) -> None:
        outsider = make_member(self.org)

        with self.assertRaises(ElectionAccessDeniedError):
            load_election_for_voting(VoterSession.from_member(outsider), election_id=self.election.id, now=T)

    def test_ended_election_has_no_ballot(self) -> None:
        with self.assertRaises(ElectionNotOpenError):
            load_election_for_voting(self.session, election_id=self.election.id, now=T + 2 * HOUR)

    def test_started_draft_election_is_reconciled_first(self) -> None:
        Election.objects.filter(pk=self.election.pk).update(status=Election.Status.draft)

        election = load_election_for_voting(self.session, election_id=self.election.id, now=T)

        self.assertEqual(election.status, Election.Status.active)


class VotingHistoryTests(TestCase):
    def test_history_lists_own_ballots_with_election_turnout(self) -> None:
        org = make_organization()
        first = make_election(org, title="First", start=T - 3 * HOUR, end=T + HOUR)
        second = make_election(org, title="Second", start=T - HOUR, end=T + HOUR)
        member = make_member(org, election=first)
        other = make_member(org, election=first)
        older = Ballot.objects.create(election=first, voter=member)
        Ballot.objects.create(election=first, voter=other)
        newer = Ballot.objects.create(election=second, voter=member)

        ballots = voting_history(VoterSession.from_member(member), now=T)

        self.assertEqual([b.id for b in ballots], [newer.id, older.id])
        self.assertEqual([b.election_ballot_count for b in ballots], [1, 2])
        self.assertEqual(ballots[1].election.title, "First")

    def test_history_is_empty_for_new_member(self) -> None:
        org = make_organization()
        member = make_member(org)

        self.assertEqual(voting_history(VoterSession.from_member(member), now=T), [])


class ElectionResultsTests(TestCase):
    def setUp(self) -> None:
        self.org = make_organization()
        self.election = make_election(self.org, status=Election.Status.closed, start=T - 3 * HOUR, end=T - HOUR)
        self.chair = Position.objects.create(election=self.election, name="Chair", max_winners=1)
        self.alice = Candidate.objects.create(
            election=self.election,
            position=self.chair,
            name="Alice",
            is_approved=True,
            display_order=2,
        )
        self.bob = Candidate.objects.create(
            election=self.election,
            position=self.chair,
            name="Bob",
            is_approved=True,
            display_order=1,
        )
        for code in ["A1", "A2", "A3", "A4"]:
            make_voter_code(self.election, code=code)
        voters = [make_member(self.org, election=self.election) for _ in range(3)]
        for voter, candidate in zip(voters, [self.alice, self.alice, self.bob], strict=True):
            ballot = Ballot.objects.create(election=self.election, voter=voter)
            Vote.objects.create(ballot=ballot, position=self.chair, candidate=candidate)
        self.session = VoterSession.from_member(voters[0])

    def test_results_count_votes_and_participation(self) -> None:
        results = election_results(self.session, election_id=self.election.id, now=T)

        self.assertEqual(results.total_voters, 4)
        self.assertEqual(results.votes_cast, 3)
        self.assertEqual(results.participation_rate, 75.0)
        [chair] = results.positions
        self.assertEqual(chair.total_votes, 3)
        self.assertEqual(chair.max_winners, 1)
        self.assertEqual([c.candidate_id for c in chair.candidates], [self.alice.id, self.bob.id])
        self.assertEqual([c.votes for c in chair.candidates], [2, 1])
        self.assertAlmostEqual(chair.candidates[0].percentage, 200 / 3)
        self.assertAlmostEqual(chair.candidates[1].percentage, 100 / 3)

    def test_position_without_votes_reports_zero_percentages(self) -> None:
        empty = Position.objects.create(election=self.election, name="Treasurer", display_order=5)
        Candidate.objects.create(election=self.election, position=empty, name="Carol", is_approved=True)

        results = election_results(self.session, election_id=self.election.id, now=T)

        treasurer = results.positions[-1]
        self.assertEqual(treasurer.total_votes, 0)
        self.assertEqual([c.percentage for c in treasurer.candidates], [0.0])

    def test_draft_election_has_no_results(self) -> None:
        draft = make_election(self.org, status=Election.Status.draft, start=T + HOUR, end=T + 2 * HOUR)

        with self.assertRaises(ElectionNotFoundError):
            election_results(self.session, election_id=draft.id, now=T)

    def test_other_organization_election_has_no_results(self) -> None:
        other_org = make_organization(name="Other Org")
        outsider = make_member(other_org)

        with self.assertRaises(ElectionNotFoundError):
            election_results(VoterSession.from_member(outsider), election_id=self.election.id, now=T)


class MemberApplicationsTests(TestCase):
    def test_lists_own_applications_newest_first(self) -> None:
        org = make_organization()
        first = make_election(org, title="First", candidate_method=Election.CandidateMethod.application)
        second = make_election(org, title="Second", candidate_method=Election.CandidateMethod.application)
        first_position = Position.objects.create(election=first, name="Chair")
        second_position = Position.objects.create(election=second, name="Treasurer")
        member = make_member(org, election=first)
        other = make_member(org, election=first)
        older = CandidateApplication.objects.create(election=first, position=first_position, applicant=member)
        newer = CandidateApplication.objects.create(election=second, position=second_position, applicant=member)
        CandidateApplication.objects.create(election=first, position=first_position, applicant=other)

        applications = member_applications(VoterSession.from_member(member), now=T)

        self.assertEqual([a.id for a in applications], [newer.id, older.id])
        self.assertEqual(applications[0].position.name, "Treasurer")
        self.assertEqual(applications[1].election.title, "First")
