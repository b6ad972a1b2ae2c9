"""
Host records and the per-host role state.

A host is in exactly one role at a time: Listening, TimeTransmitter or
TimeReceiver. The role is a plain value; the on_* transition functions take
the current role and a message and return the next role, updating in place
when the host is already in the matching role and replacing it otherwise.
The most recently dispatched message type decides the role, which is an
approximation of the IEEE 1588 port state machine a passive observer cannot
run.
"""

import time
from dataclasses import dataclass
from ipaddress import IPv4Address, IPv6Address, ip_address
from typing import Dict, Iterable, List, Optional, Union

from .config import DEFAULT_MAX_PACKET_HISTORY
from .correlation import Selection
from .history import BoundedHistory
from .messages import (
    AnnounceMessage,
    ClockIdentity,
    CorrectionField,
    DelayRespMessage,
    FollowUpMessage,
    PDelayRespFollowUpMessage,
    PDelayRespMessage,
    PtpHeader,
    PtpTimestamp,
    SyncMessage,
)

IpAddress = Union[IPv4Address, IPv6Address]

# Where a receiver's selected transmitter came from
SELECTED_BY_DELAY_RESP = "delay_resp"
SELECTED_BY_BMCA = "bmca"
SELECTED_BY_SYNC_CORRELATION = "sync_correlation"
EXPLICIT_SELECTION_SOURCES = (SELECTED_BY_DELAY_RESP, SELECTED_BY_BMCA)


@dataclass
class Listening:
    pass


@dataclass
class TimeTransmitter:
    priority1: Optional[int] = None
    priority2: Optional[int] = None
    clock_class: Optional[int] = None
    clock_accuracy: Optional[int] = None
    offset_scaled_log_variance: Optional[int] = None
    steps_removed: Optional[int] = None
    time_source: Optional[int] = None
    announced_identity: Optional[ClockIdentity] = None
    current_utc_offset: Optional[int] = None
    announce_flags: int = 0
    last_sync_seen: Optional[float] = None
    last_announce_origin_timestamp: Optional[PtpTimestamp] = None
    last_sync_origin_timestamp: Optional[PtpTimestamp] = None
    last_followup_origin_timestamp: Optional[PtpTimestamp] = None
    is_bmca_winner: bool = False


@dataclass
class TimeReceiver:
    last_delay_response_timestamp: Optional[PtpTimestamp] = None
    last_pdelay_response_timestamp: Optional[PtpTimestamp] = None
    last_pdelay_follow_up_timestamp: Optional[PtpTimestamp] = None
    selected_transmitter_identity: Optional[ClockIdentity] = None
    selected_transmitter_confidence: float = 0.0
    selection_source: Optional[str] = None

    def select(self, identity: Optional[ClockIdentity], confidence: float, source: Optional[str]) -> None:
        self.selected_transmitter_identity = identity
        self.selected_transmitter_confidence = confidence
        self.selection_source = source


RoleState = Union[Listening, TimeTransmitter, TimeReceiver]


def _as_transmitter(state: RoleState) -> TimeTransmitter:
    return state if isinstance(state, TimeTransmitter) else TimeTransmitter()


def _as_receiver(state: RoleState) -> TimeReceiver:
    return state if isinstance(state, TimeReceiver) else TimeReceiver()


def on_announce(state: RoleState, msg: AnnounceMessage) -> TimeTransmitter:
    state = _as_transmitter(state)
    state.priority1 = msg.priority1
    state.priority2 = msg.priority2
    state.clock_class = msg.clock_class
    state.clock_accuracy = msg.clock_accuracy
    state.offset_scaled_log_variance = msg.offset_scaled_log_variance
    state.steps_removed = msg.steps_removed
    state.time_source = msg.time_source
    state.announced_identity = msg.grandmaster_identity
    state.current_utc_offset = msg.current_utc_offset
    state.announce_flags = msg.header.flags
    state.last_announce_origin_timestamp = msg.origin_timestamp
    return state


def on_sync(state: RoleState, msg: SyncMessage, now: float) -> TimeTransmitter:
    state = _as_transmitter(state)
    state.last_sync_origin_timestamp = msg.origin_timestamp
    state.last_sync_seen = now
    return state


def on_follow_up(state: RoleState, msg: FollowUpMessage) -> TimeTransmitter:
    state = _as_transmitter(state)
    state.last_followup_origin_timestamp = msg.precise_origin_timestamp
    return state


def on_delay_resp(state: RoleState, msg: DelayRespMessage) -> TimeReceiver:
    """The responder answered this host's Delay_Req: explicit evidence."""
    state = _as_receiver(state)
    state.last_delay_response_timestamp = msg.receive_timestamp
    state.select(msg.header.clock_identity, 1.0, SELECTED_BY_DELAY_RESP)
    return state


def on_sync_correlation(state: RoleState, selection: Selection) -> TimeReceiver:
    """
    Applies a guessed transmitter after this host sent a Delay_Req.

    Explicit selections (Delay_Resp, BMCA) are kept. The "no sync traffic"
    sentinel only lands on a receiver without any selection.
    """
    state = _as_receiver(state)
    if state.selection_source in EXPLICIT_SELECTION_SOURCES:
        return state
    if selection.identity is None:
        if state.selected_transmitter_identity is None:
            state.select(None, selection.confidence, None)
        return state
    state.select(selection.identity, selection.confidence, SELECTED_BY_SYNC_CORRELATION)
    return state


def on_peer_delay_resp(state: RoleState, msg: PDelayRespMessage) -> RoleState:
    # Peer delay is symmetric: record the timestamp, never change the role
    if isinstance(state, TimeReceiver):
        state.last_pdelay_response_timestamp = msg.request_receipt_timestamp
    return state


def on_peer_delay_follow_up(state: RoleState, msg: PDelayRespFollowUpMessage) -> RoleState:
    if isinstance(state, TimeReceiver):
        state.last_pdelay_follow_up_timestamp = msg.response_origin_timestamp
    return state


def role_label(state: RoleState) -> str:
    if isinstance(state, TimeTransmitter):
        return "Primary Time Transmitter" if state.is_bmca_winner else "Time Transmitter"
    if isinstance(state, TimeReceiver):
        return "Time Receiver"
    return "Listening"


def role_short(state: RoleState) -> str:
    if isinstance(state, TimeTransmitter):
        return "PTT" if state.is_bmca_winner else "TT"
    if isinstance(state, TimeReceiver):
        return "TR"
    return "L"


@dataclass
class MessageCounters:
    announce: int = 0
    sync: int = 0
    follow_up: int = 0
    delay_req: int = 0
    delay_resp: int = 0
    pdelay_req: int = 0
    pdelay_resp: int = 0
    pdelay_resp_follow_up: int = 0
    signaling: int = 0
    management: int = 0
    total_sent: int = 0
    total_received: int = 0


class PtpHost:
    def __init__(self, clock_identity: ClockIdentity, max_packet_history: int = DEFAULT_MAX_PACKET_HISTORY,
                 now: Optional[float] = None):
        self.clock_identity = clock_identity
        # ip -> interfaces it was seen on, insertion ordered
        self.ip_addresses: Dict[IpAddress, List[str]] = {}
        self.domain_number: Optional[int] = None
        self.last_version: Optional[str] = None
        self.last_correction_field: Optional[CorrectionField] = None
        self.last_seen = time.monotonic() if now is None else now
        self.counters = MessageCounters()
        self.state: RoleState = Listening()
        self.packet_history = BoundedHistory(max_packet_history)

    def __repr__(self):
        return f"PtpHost({self.clock_identity}, {role_short(self.state)}, domain={self.domain_number})"

    def record_ip(self, ip: Union[str, IpAddress], interface: str) -> None:
        interfaces = self.ip_addresses.setdefault(ip_address(ip), [])
        if interface not in interfaces:
            interfaces.append(interface)

    def ip_count(self) -> int:
        return len(self.ip_addresses)

    def primary_ip(self) -> Optional[IpAddress]:
        return next(iter(self.ip_addresses), None)

    def has_multiple_ips(self) -> bool:
        return len(self.ip_addresses) > 1

    def has_local_ip(self, local_ips: Iterable[IpAddress]) -> bool:
        return any(ip in self.ip_addresses for ip in local_ips)

    def update_from_header(self, header: PtpHeader, now: float) -> None:
        self.domain_number = header.domain_number
        self.last_version = header.version_text
        self.last_correction_field = header.correction_field
        self.last_seen = now

    def add_packet(self, packet) -> None:
        self.packet_history.push(packet)

    def get_packet_history(self) -> list:
        return self.packet_history.to_list()

    def clear_packet_history(self) -> None:
        self.packet_history.clear()

    def set_max_packet_history(self, max_history: int) -> None:
        self.packet_history.resize(max_history)

    def is_transmitter(self) -> bool:
        return isinstance(self.state, TimeTransmitter)

    def is_receiver(self) -> bool:
        return isinstance(self.state, TimeReceiver)

    def is_listening(self) -> bool:
        return isinstance(self.state, Listening)

    def is_bmca_winner(self) -> bool:
        return isinstance(self.state, TimeTransmitter) and self.state.is_bmca_winner

    def vendor_name(self) -> Optional[str]:
        return self.clock_identity.vendor_name()

    def seconds_since_last_seen(self, now: Optional[float] = None) -> float:
        now = time.monotonic() if now is None else now
        return max(0.0, now - self.last_seen)
