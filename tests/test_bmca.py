import pytest

from ptp_tracer.bmca import best_transmitter, compare_transmitters, run_election
from ptp_tracer.host import SELECTED_BY_BMCA, SELECTED_BY_SYNC_CORRELATION, PtpHost, TimeReceiver, TimeTransmitter

from . import ptp_packets as pkt


def make_transmitter(n, domain=0, **announced):
    host = PtpHost(pkt.identity(n), now=0.0)
    host.domain_number = domain
    host.state = TimeTransmitter(**announced)
    return host


def make_receiver(n, domain=0):
    host = PtpHost(pkt.identity(n), now=0.0)
    host.domain_number = domain
    host.state = TimeReceiver()
    return host


def registry(*hosts):
    return {host.clock_identity: host for host in hosts}


def full(priority1=128, **overrides):
    values = dict(priority1=priority1, clock_class=248, clock_accuracy=0xFE,
                  offset_scaled_log_variance=0xFFFF, priority2=128)
    values.update(overrides)
    return values


def test_lower_priority1_wins():
    a = make_transmitter(1, **full(priority1=64))
    b = make_transmitter(2, **full(priority1=128))
    assert compare_transmitters(a.state, a.clock_identity, b.state, b.clock_identity) < 0
    assert run_election(registry(a, b)) == {0: a.clock_identity}
    assert a.is_bmca_winner()
    assert not b.is_bmca_winner()


@pytest.mark.parametrize("level, better, worse", [
    ("clock_class", 6, 248),
    ("clock_accuracy", 0x21, 0xFE),
    ("offset_scaled_log_variance", 0x4E5D, 0xFFFF),
    ("priority2", 1, 128),
])
def test_each_level_discriminates(level, better, worse):
    a = make_transmitter(9, **full(**{level: better}))
    b = make_transmitter(1, **full(**{level: worse}))
    assert best_transmitter([(b.clock_identity, b.state), (a.clock_identity, a.state)]) == a.clock_identity


def test_identity_breaks_ties():
    a = make_transmitter(1, **full())
    b = make_transmitter(2, **full())
    assert run_election(registry(b, a)) == {0: a.clock_identity}


def test_announced_value_beats_missing_value():
    a = make_transmitter(2, priority1=200)
    b = make_transmitter(1)
    assert compare_transmitters(a.state, a.clock_identity, b.state, b.clock_identity) < 0


def test_level_missing_on_both_sides_is_skipped():
    a = make_transmitter(2, clock_class=6)
    b = make_transmitter(1, clock_class=7)
    assert best_transmitter([(b.clock_identity, b.state), (a.clock_identity, a.state)]) == a.clock_identity


def test_election_is_idempotent():
    hosts = registry(make_transmitter(1, **full(priority1=100)), make_transmitter(2, **full(priority1=50)))
    first = run_election(hosts)
    second = run_election(hosts, previous=first)
    assert first == second
    assert sum(1 for h in hosts.values() if h.is_bmca_winner()) == 1


def test_domains_elect_separately():
    a = make_transmitter(1, domain=0, **full(priority1=200))
    b = make_transmitter(2, domain=24, **full(priority1=10))
    winners = run_election(registry(a, b))
    assert winners == {0: a.clock_identity, 24: b.clock_identity}


def test_winner_flag_moves_to_the_new_best():
    a = make_transmitter(1, **full(priority1=100))
    b = make_transmitter(2, **full(priority1=120))
    hosts = registry(a, b)
    run_election(hosts)
    b.state.priority1 = 10
    run_election(hosts)
    assert b.is_bmca_winner()
    assert not a.is_bmca_winner()


def test_receivers_follow_the_winner_of_their_domain():
    winner = make_transmitter(1, **full(priority1=1))
    same_domain = make_receiver(5)
    same_domain.state.select(pkt.identity(7), 0.5, SELECTED_BY_SYNC_CORRELATION)
    other_domain = make_receiver(6, domain=3)
    run_election(registry(winner, same_domain, other_domain))

    assert same_domain.state.selected_transmitter_identity == winner.clock_identity
    assert same_domain.state.selected_transmitter_confidence == 1.0
    assert same_domain.state.selection_source == SELECTED_BY_BMCA
    assert other_domain.state.selected_transmitter_identity is None


def test_no_transmitters_no_winners():
    assert run_election(registry(make_receiver(1))) == {}
