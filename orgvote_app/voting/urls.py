from __future__ import annotations

from django.urls import path

from voting import views_voter

urlpatterns = [
    path("voter/elections/", views_voter.voter_elections, name="voter-elections"),
    path("voter/status/", views_voter.voter_status, name="voter-status"),
    path("voter/history/", views_voter.voter_history, name="voter-history"),
    path("voter/applications/", views_voter.voter_applications, name="voter-applications"),
    path("voter/elections/<int:election_id>/ballot/", views_voter.voter_ballot, name="voter-election-ballot"),
    path("voter/elections/<int:election_id>/results/", views_voter.voter_results, name="voter-election-results"),
    path("voter/elections/<int:election_id>/apply/", views_voter.voter_apply, name="voter-election-apply"),
    path("voter/elections/<int:election_id>/vote/", views_voter.voter_vote, name="voter-election-vote"),
]
