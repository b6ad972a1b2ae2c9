"""
The PTP host registry and its scan tick.

Every scan drains a bounded number of packets from the packet source,
decodes them, updates the hosts they mention, expires the Sync correlation
cache and reruns the BMCA election. All registry state is touched from the
scan only, so no locking is needed here; the capture threads hand packets
over through the source's queue.
"""

import logging
import time
from dataclasses import dataclass
from ipaddress import ip_address
from typing import Callable, Dict, List, Optional

from .bmca import run_election
from .capture import RawPacket
from .config import DEFAULT_MAX_PACKET_HISTORY, DEFAULT_MAX_PACKETS_PER_SCAN
from .correlation import SyncCorrelationCache
from .host import (
    IpAddress,
    PtpHost,
    on_announce,
    on_delay_resp,
    on_follow_up,
    on_peer_delay_follow_up,
    on_peer_delay_resp,
    on_sync,
    on_sync_correlation,
)
from .messages import (
    AnnounceMessage,
    ClockIdentity,
    DelayReqMessage,
    DelayRespMessage,
    FollowUpMessage,
    ManagementMessage,
    MessageType,
    PDelayReqMessage,
    PDelayRespFollowUpMessage,
    PDelayRespMessage,
    PtpHeader,
    PtpMessage,
    PtpParseError,
    SignalingMessage,
    SyncMessage,
    parse_message,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessedPacket:
    message: PtpMessage
    timestamp: float
    source_ip: str
    source_port: int
    interface: str
    vlan_id: Optional[int]
    payload: bytes

    @property
    def header(self) -> PtpHeader:
        return self.message.header

    @property
    def message_type(self) -> MessageType:
        return self.message.header.message_type


class PtpTracker:
    def __init__(
        self,
        source=None,
        max_packet_history: int = DEFAULT_MAX_PACKET_HISTORY,
        max_packets_per_scan: int = DEFAULT_MAX_PACKETS_PER_SCAN,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_packet_history < 1:
            raise ValueError(f"packet history must hold at least 1 packet, got {max_packet_history}")
        self.source = source
        self.max_packet_history = max_packet_history
        self.max_packets_per_scan = max_packets_per_scan
        self._clock = clock
        self._hosts: Dict[ClockIdentity, PtpHost] = {}
        self.correlation = SyncCorrelationCache(clock=clock)
        self._winners: Dict[int, ClockIdentity] = {}
        self._previous_winners: Dict[int, ClockIdentity] = {}
        self._last_packet = clock()

    def __len__(self) -> int:
        return len(self._hosts)

    # --- Scan tick ---

    def scan(self) -> int:
        """
        Runs one update: drain packets, expire correlation data, elect.

        Returns:
            int: The number of packets taken from the source.
        """
        taken = self.process_packets()
        self.correlation.expire()
        self.run_bmca_election()
        return taken

    def process_packets(self) -> int:
        if self.source is None:
            return 0
        taken = 0
        while taken < self.max_packets_per_scan:
            raw_packet = self.source.try_recv()
            if raw_packet is None:
                break
            taken += 1
            self.handle_packet(raw_packet)
        return taken

    def handle_packet(self, raw_packet: RawPacket) -> bool:
        """
        Decodes one UDP payload and applies it to the registry.

        Returns:
            bool: False if the payload is not a recognizable PTP message, in
            which case nothing was changed.
        """
        try:
            msg = parse_message(raw_packet.payload)
        except PtpParseError as e:
            logger.debug(f"Dropping packet from {raw_packet.source_ip} on {raw_packet.interface}: {e}")
            return False

        now = self._clock()
        packet = ProcessedPacket(
            message=msg,
            timestamp=raw_packet.timestamp,
            source_ip=raw_packet.source_ip,
            source_port=raw_packet.source_port,
            interface=raw_packet.interface,
            vlan_id=raw_packet.vlan_id,
            payload=raw_packet.payload,
        )

        sender = self.get_or_create(msg.header.clock_identity)
        sender.record_ip(raw_packet.source_ip, raw_packet.interface)
        sender.counters.total_sent += 1
        sender.update_from_header(msg.header, now)
        sender.add_packet(packet)
        self._dispatch(sender, msg, packet, now)

        self._last_packet = now
        return True

    def _dispatch(self, sender: PtpHost, msg: PtpMessage, packet: ProcessedPacket, now: float) -> None:
        domain = msg.header.domain_number
        counters = sender.counters

        if isinstance(msg, AnnounceMessage):
            counters.announce += 1
            sender.state = on_announce(sender.state, msg)

        elif isinstance(msg, SyncMessage):
            counters.sync += 1
            sender.state = on_sync(sender.state, msg, now)
            self.correlation.record(domain, sender.clock_identity)

        elif isinstance(msg, FollowUpMessage):
            counters.follow_up += 1
            sender.state = on_follow_up(sender.state, msg)
            self.correlation.record(domain, sender.clock_identity)

        elif isinstance(msg, DelayReqMessage):
            counters.delay_req += 1
            selection = self.correlation.select_transmitter(domain)
            sender.state = on_sync_correlation(sender.state, selection)

        elif isinstance(msg, DelayRespMessage):
            counters.delay_resp += 1
            requester = self._requester(msg.requesting_port_identity.clock_identity, domain, packet)
            requester.counters.delay_resp += 1
            requester.state = on_delay_resp(requester.state, msg)

        elif isinstance(msg, PDelayReqMessage):
            counters.pdelay_req += 1

        elif isinstance(msg, PDelayRespMessage):
            counters.pdelay_resp += 1
            requester = self._requester(msg.requesting_port_identity.clock_identity, domain, packet)
            requester.counters.pdelay_resp += 1
            requester.state = on_peer_delay_resp(requester.state, msg)

        elif isinstance(msg, PDelayRespFollowUpMessage):
            counters.pdelay_resp_follow_up += 1
            requester = self._requester(msg.requesting_port_identity.clock_identity, domain, packet)
            requester.counters.pdelay_resp_follow_up += 1
            requester.state = on_peer_delay_follow_up(requester.state, msg)

        elif isinstance(msg, SignalingMessage):
            counters.signaling += 1

        elif isinstance(msg, ManagementMessage):
            counters.management += 1

    def _requester(self, identity: ClockIdentity, domain: int, packet: ProcessedPacket) -> PtpHost:
        """The host a response is addressed to: counts it as received traffic."""
        host = self.get_or_create(identity)
        host.counters.total_received += 1
        if host.domain_number is None:
            host.domain_number = domain
        host.add_packet(packet)
        return host

    def run_bmca_election(self) -> Dict[int, ClockIdentity]:
        winners = run_election(self._hosts, previous=self._winners)
        for domain, winner in winners.items():
            old = self._winners.get(domain)
            if old is not None and old != winner:
                self._previous_winners[domain] = old
        self._winners = winners
        return dict(winners)

    # --- Registry ---

    def get_or_create(self, clock_identity: ClockIdentity) -> PtpHost:
        host = self._hosts.get(clock_identity)
        if host is None:
            host = PtpHost(clock_identity, self.max_packet_history, now=self._clock())
            self._hosts[clock_identity] = host
            logger.debug(f"New PTP host {clock_identity}")
        return host

    def hosts(self) -> List[PtpHost]:
        """All hosts, unordered."""
        return list(self._hosts.values())

    def host(self, clock_identity: ClockIdentity) -> Optional[PtpHost]:
        return self._hosts.get(clock_identity)

    def packet_history(self, clock_identity: ClockIdentity) -> Optional[List[ProcessedPacket]]:
        host = self._hosts.get(clock_identity)
        return host.get_packet_history() if host is not None else None

    def domains(self) -> List[int]:
        return sorted({h.domain_number for h in self._hosts.values() if h.domain_number is not None})

    def transmitter_count(self) -> int:
        return sum(1 for h in self._hosts.values() if h.is_transmitter())

    def receiver_count(self) -> int:
        return sum(1 for h in self._hosts.values() if h.is_receiver())

    def listening_count(self) -> int:
        return sum(1 for h in self._hosts.values() if h.is_listening())

    def bmca_winner(self, domain: int) -> Optional[ClockIdentity]:
        return self._winners.get(domain)

    def bmca_winners(self) -> Dict[int, ClockIdentity]:
        return dict(self._winners)

    def previous_bmca_winner(self, domain: int) -> Optional[ClockIdentity]:
        return self._previous_winners.get(domain)

    def last_packet_age(self) -> float:
        """Seconds since the last accepted packet (or since start)."""
        return max(0.0, self._clock() - self._last_packet)

    def now(self) -> float:
        return self._clock()

    def local_ips(self) -> List[IpAddress]:
        interfaces = getattr(self.source, "interfaces", None) or []
        return [ip_address(address) for _, address in interfaces if address]

    def dropped_packets(self) -> int:
        return getattr(self.source, "dropped", 0)

    def pending_packets(self) -> Optional[int]:
        """Packets a replay source has not handed out yet, None for live capture."""
        remaining = getattr(self.source, "remaining", None)
        return remaining() if remaining is not None else None

    def reference_timestamp(self) -> Optional[float]:
        """Capture time of the newest packet in a replayed file."""
        return getattr(self.source, "last_timestamp", None)

    # --- Operator actions ---

    def clear_hosts(self) -> None:
        self._hosts.clear()
        self._winners.clear()
        self._previous_winners.clear()
        self.correlation.clear()

    def clear_host_packet_history(self, clock_identity: ClockIdentity) -> None:
        host = self._hosts.get(clock_identity)
        if host is not None:
            host.clear_packet_history()

    def clear_all_packet_histories(self) -> None:
        for host in self._hosts.values():
            host.clear_packet_history()

    def set_max_packet_history(self, max_history: int) -> None:
        if max_history < 1:
            raise ValueError(f"packet history must hold at least 1 packet, got {max_history}")
        self.max_packet_history = max_history
        for host in self._hosts.values():
            host.set_max_packet_history(max_history)
