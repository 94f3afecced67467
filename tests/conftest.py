import pytest

from social_topology import Ballot, Participant


def make_participants(*ids: str) -> list[Participant]:
    return [Participant(pid, pid.upper()) for pid in ids]


@pytest.fixture
def rock_paper_scissors():
    """Three members, each preferring the next one: a perfect majority cycle."""
    participants = make_participants("a", "b", "c")
    ballots = [
        Ballot("a", ("b", "c")),
        Ballot("b", ("c", "a")),
        Ballot("c", ("a", "b")),
    ]
    return participants, ballots


@pytest.fixture
def linear_group():
    """Four members who all agree on the order p1 > p2 > p3 > p4."""
    ids = ["p1", "p2", "p3", "p4"]
    participants = make_participants(*ids)
    ballots = [
        Ballot(voter, tuple(pid for pid in ids if pid != voter))
        for voter in ids
    ]
    return participants, ballots


@pytest.fixture
def two_blocs():
    """Seven members: a triangle a-b-c, a pair d-e and two outsiders."""
    participants = make_participants("a", "b", "c", "d", "e", "f", "g")
    ballots = [
        Ballot("a", ("b", "c", "d", "e", "f", "g")),
        Ballot("b", ("c", "a", "d", "e", "f", "g")),
        Ballot("c", ("a", "b", "d", "e", "f", "g")),
        Ballot("d", ("e", "a", "b", "c", "f", "g")),
        Ballot("e", ("d", "a", "b", "c", "f", "g")),
        Ballot("f", ("a", "b", "c", "d", "e", "g")),
        Ballot("g", ("a", "b", "c", "d", "e", "f")),
    ]
    return participants, ballots
