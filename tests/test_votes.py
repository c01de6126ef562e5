"""Tests for vote submission: signatures, probation, deadline, uniqueness."""

import pytest

from errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ProbationError,
    ValidationError,
    VotingClosedError,
)


class TestSubmitVote:

    def test_vote_recorded(self, hs, clock, registered, post, vote):
        creator, voter = registered(2)
        rumor = post(creator)
        v = vote(voter, rumor.id, True)
        assert v.vote_value is True
        assert v.voted_at == clock()
        [stored] = hs.votes.list_votes(rumor.id)
        assert stored.voter_public_key == voter.public_key

    def test_second_vote_conflicts(self, hs, registered, post, vote):
        creator, voter = registered(2)
        rumor = post(creator)
        vote(voter, rumor.id, True)
        with pytest.raises(ConflictError):
            vote(voter, rumor.id, False)
        votes = hs.votes.list_votes(rumor.id)
        assert len(votes) == 1
        assert votes[0].vote_value is True

    def test_creator_may_vote_on_own_rumor(self, registered, post, vote):
        creator = registered()
        rumor = post(creator)
        assert vote(creator, rumor.id, True).vote_value is True

    def test_signature_must_match_value(self, hs, registered, post):
        creator, voter = registered(2)
        rumor = post(creator)
        with pytest.raises(AuthorizationError):
            hs.votes.submit(rumor.id, voter.public_key, False, voter.sign_vote(rumor.id, True))

    def test_non_boolean_value_rejected(self, hs, registered, post):
        creator, voter = registered(2)
        rumor = post(creator)
        with pytest.raises(ValidationError):
            hs.votes.submit(rumor.id, voter.public_key, 1, voter.sign_vote(rumor.id, True))

    def test_unknown_voter(self, hs, registered, post, actor):
        creator = registered()
        rumor = post(creator)
        stranger = actor()
        with pytest.raises(NotFoundError):
            hs.votes.submit(rumor.id, stranger.public_key, True,
                            stranger.sign_vote(rumor.id, True))

    def test_unknown_rumor(self, registered, vote):
        voter = registered()
        with pytest.raises(NotFoundError):
            vote(voter, 4242, True)

    def test_probation_blocks_voting(self, hs, registered, post, actor):
        creator = registered()
        rumor = post(creator)
        newcomer = actor()
        hs.identities.register(newcomer.public_key)
        with pytest.raises(ProbationError):
            hs.votes.submit(rumor.id, newcomer.public_key, True,
                            newcomer.sign_vote(rumor.id, True))

    def test_vote_is_audited(self, hs, registered, post, vote):
        creator, voter = registered(2)
        rumor = post(creator)
        vote(voter, rumor.id, False)
        entry = hs.audit.list_entries(action="VOTE")[0]
        assert entry.actor_public_key == voter.public_key
        assert entry.target_id == str(rumor.id)


class TestDeadline:
    """A vote is accepted iff now < deadline, whether or not the sweep ran."""

    def test_vote_just_before_deadline_accepted(self, clock, registered, post, vote):
        creator, voter = registered(2)
        rumor = post(creator, deadline=clock() + 100)
        clock.advance(99.5)
        vote(voter, rumor.id, True)

    def test_vote_at_deadline_rejected(self, clock, registered, post, vote):
        creator, voter = registered(2)
        rumor = post(creator, deadline=clock() + 100)
        clock.advance(100)
        with pytest.raises(VotingClosedError) as exc:
            vote(voter, rumor.id, True)
        assert exc.value.status_code == 403

    def test_late_vote_rejected_before_sweep(self, hs, clock, registered, post, vote):
        creator, voter = registered(2)
        rumor = post(creator, deadline=clock() + 100)
        clock.advance(500)
        with pytest.raises(VotingClosedError):
            vote(voter, rumor.id, True)
        with hs.db.connection() as conn:
            assert conn.scalar("SELECT COUNT(*) FROM finalized_scores") == 0
