"""
Best Master Clock Algorithm election over the observed transmitters.

Transmitters are grouped by domain and compared in IEEE 1588 order, lower
being better at every level:
    priority1 < clockClass < clockAccuracy < offsetScaledLogVariance
    < priority2 < clockIdentity
A transmitter that announced a value beats one that did not. If neither
did, the level is skipped. The clock identity always discriminates.
"""

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .host import SELECTED_BY_BMCA, PtpHost, TimeReceiver, TimeTransmitter
from .messages import ClockIdentity

logger = logging.getLogger(__name__)

BMCA_LEVELS = (
    "priority1",
    "clock_class",
    "clock_accuracy",
    "offset_scaled_log_variance",
    "priority2",
)

Candidate = Tuple[ClockIdentity, TimeTransmitter]


def compare_transmitters(a: TimeTransmitter, a_id: ClockIdentity,
                         b: TimeTransmitter, b_id: ClockIdentity) -> int:
    """
    Compares two transmitters for BMCA.

    Returns:
        int: negative if `a` is the better clock, positive if `b` is.
        Zero only if both identities are equal.
    """
    for level in BMCA_LEVELS:
        ours = getattr(a, level)
        theirs = getattr(b, level)
        if ours is not None and theirs is not None:
            if ours != theirs:
                return -1 if ours < theirs else 1
        elif ours is not None:
            return -1
        elif theirs is not None:
            return 1
    if a_id == b_id:
        return 0
    return -1 if bytes(a_id) < bytes(b_id) else 1


def best_transmitter(candidates: Iterable[Candidate]) -> Optional[ClockIdentity]:
    """Folds the candidates pairwise, keeping the running best."""
    best: Optional[Candidate] = None
    for candidate in candidates:
        if best is None or compare_transmitters(candidate[1], candidate[0], best[1], best[0]) < 0:
            best = candidate
    return best[0] if best else None


def transmitters_by_domain(hosts: Iterable[PtpHost]) -> Dict[int, List[PtpHost]]:
    domains: Dict[int, List[PtpHost]] = {}
    for host in hosts:
        if host.domain_number is not None and isinstance(host.state, TimeTransmitter):
            domains.setdefault(host.domain_number, []).append(host)
    return domains


def run_election(hosts: Mapping[ClockIdentity, PtpHost],
                 previous: Optional[Mapping[int, ClockIdentity]] = None) -> Dict[int, ClockIdentity]:
    """
    Elects the best transmitter of every domain, marks it as the BMCA winner
    and makes it the selected transmitter of every receiver in that domain.

    Args:
        hosts (Mapping): The host registry, keyed by clock identity.
        previous (Mapping): Winners of the last run, only used for logging.

    Returns:
        dict: domain number -> winning clock identity.
    """
    winners: Dict[int, ClockIdentity] = {}
    for domain, candidates in transmitters_by_domain(hosts.values()).items():
        for host in candidates:
            host.state.is_bmca_winner = False

        winner_id = best_transmitter((host.clock_identity, host.state) for host in candidates)
        hosts[winner_id].state.is_bmca_winner = True
        winners[domain] = winner_id
        if len(candidates) > 1 and previous is not None and previous.get(domain) != winner_id:
            logger.info(f"BMCA: domain {domain} winner: {winner_id} (Primary Time Transmitter)")
        update_receivers_for_domain(hosts.values(), domain, winner_id)
    return winners


def update_receivers_for_domain(hosts: Iterable[PtpHost], domain: int, winner_id: ClockIdentity) -> None:
    for host in hosts:
        if host.domain_number == domain and isinstance(host.state, TimeReceiver):
            host.state.select(winner_id, 1.0, SELECTED_BY_BMCA)
