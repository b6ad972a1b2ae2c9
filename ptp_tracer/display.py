"""
Plain-text status view of the tracker, refreshed on every tick.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .config import DEFAULT_HISTORY_ROWS
from .host import PtpHost, TimeReceiver, TimeTransmitter, role_label, role_short
from .messages import (
    ClockIdentity,
    PtpFlags,
    PtpTimestamp,
    clock_accuracy_name,
    clock_class_name,
    log_interval_text,
    ptp_to_utc,
    time_source_name,
)

RULE = "=" * 60


@dataclass
class TreeNode:
    host: PtpHost
    depth: int = 0
    children: List["TreeNode"] = field(default_factory=list)


def _sort_key(host: PtpHost):
    return (host.domain_number if host.domain_number is not None else 256, bytes(host.clock_identity))


def host_tree(tracker) -> List[TreeNode]:
    """
    Arranges the hosts as transmitter -> receivers trees. Receivers whose
    selected transmitter is unknown, and listening hosts, are listed as
    roots after the transmitters.
    """
    hosts = sorted(tracker.hosts(), key=_sort_key)
    receivers_of: Dict[ClockIdentity, List[PtpHost]] = {}
    for host in hosts:
        if isinstance(host.state, TimeReceiver) and host.state.selected_transmitter_identity is not None:
            receivers_of.setdefault(host.state.selected_transmitter_identity, []).append(host)

    placed = set()

    def build(host: PtpHost, depth: int) -> TreeNode:
        placed.add(host.clock_identity)
        node = TreeNode(host, depth)
        for receiver in receivers_of.get(host.clock_identity, []):
            if receiver.clock_identity not in placed:
                node.children.append(build(receiver, depth + 1))
        return node

    roots = []
    # Primary time transmitters first
    transmitters = sorted((h for h in hosts if h.is_transmitter()), key=lambda h: not h.is_bmca_winner())
    for host in transmitters:
        if host.clock_identity not in placed:
            roots.append(build(host, 0))
    for host in hosts:
        if host.clock_identity not in placed:
            roots.append(build(host, 0))
    return roots


def format_ptp_time(timestamp: Optional[PtpTimestamp], utc_offset: Optional[int]) -> str:
    if timestamp is None:
        return "N/A"
    converted = ptp_to_utc(timestamp, utc_offset or 0)
    if converted is None:
        return str(timestamp)
    return converted.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3] + " UTC"


def format_epoch(timestamp: Optional[float]) -> str:
    if timestamp is None:
        return "N/A"
    return datetime.fromtimestamp(timestamp, timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3] + " UTC"


def format_ips(host: PtpHost) -> str:
    if not host.ip_addresses:
        return "-"
    return ", ".join(f"{ip} ({','.join(ifaces)})" for ip, ifaces in host.ip_addresses.items())


def _value(value: Optional[int], fmt: str = "{}") -> str:
    return "-" if value is None else fmt.format(value)


def describe_host(host: PtpHost, now: float, local_ips=()) -> str:
    local = " [local]" if local_ips and host.has_local_ip(local_ips) else ""
    vendor = host.vendor_name() or "unknown vendor"
    return (
        f"{role_short(host.state):<3} {host.clock_identity} | {vendor} | {format_ips(host)}{local} | "
        f"domain {_value(host.domain_number)} | v{host.last_version or '-'} | "
        f"seen {host.seconds_since_last_seen(now):.1f}s ago"
    )


def describe_transmitter(state: TimeTransmitter) -> str:
    clock_class = "-" if state.clock_class is None else f"{state.clock_class} ({clock_class_name(state.clock_class)})"
    accuracy = "-" if state.clock_accuracy is None else clock_accuracy_name(state.clock_accuracy)
    source = "-" if state.time_source is None else time_source_name(state.time_source)
    return (
        f"P1:{_value(state.priority1)} P2:{_value(state.priority2)} | Class:{clock_class} "
        f"Acc:{accuracy} Var:{_value(state.offset_scaled_log_variance, '0x{:04x}')} | "
        f"Steps:{_value(state.steps_removed)} Source:{source} | "
        f"Time:{format_ptp_time(state.last_followup_origin_timestamp or state.last_sync_origin_timestamp, state.current_utc_offset)}"
    )


def describe_utc(state: TimeTransmitter) -> str:
    if state.current_utc_offset is None:
        return "UTC offset: N/A"
    valid = "valid" if state.announce_flags & PtpFlags.CURRENT_UTC_OFFSET_VALID else "not valid"
    text = f"UTC offset: {state.current_utc_offset}s ({valid})"
    if state.announce_flags & PtpFlags.LEAP61:
        text += " | Leap second pending: +1s"
    elif state.announce_flags & PtpFlags.LEAP59:
        text += " | Leap second pending: -1s"
    return text


def describe_receiver(state: TimeReceiver) -> str:
    if state.selected_transmitter_identity is None:
        selected = "no sync traffic"
    else:
        selected = str(state.selected_transmitter_identity)
    return f"Transmitter: {selected} (confidence {state.selected_transmitter_confidence:.0%})"


def describe_packet(packet) -> str:
    header = packet.header
    kind = "event" if header.message_type.is_event else "general"
    vlan = f" vlan {packet.vlan_id}" if packet.vlan_id is not None else ""
    flags = ",".join(header.flag_names) or "-"
    return (
        f"{format_epoch(packet.timestamp)}  {str(header.message_type):<22} {kind:<7} "
        f"{packet.source_ip}:{packet.source_port} on {packet.interface}{vlan} | "
        f"seq {header.sequence_id} | flags {flags} | "
        f"interval {log_interval_text(header.log_message_interval)} | corr {header.correction_field}"
    )


def render_host_detail(tracker, clock_identity: ClockIdentity, history_rows: int = DEFAULT_HISTORY_ROWS) -> str:
    """
    Renders everything known about one host: role, addresses, message
    counters and the newest packets of its history.

    Args:
        tracker (PtpTracker): The tracker holding the host.
        clock_identity (ClockIdentity): The host to show.
        history_rows (int): How many of the newest packets to list.

    Returns:
        str: The detail text.
    """
    host = tracker.host(clock_identity)
    lines = [f"--- Host {clock_identity} ---"]
    if host is None:
        lines.append("  Not seen yet.")
        return "\n".join(lines)

    now = tracker.now()
    lines.append(f"  Role: {role_label(host.state)}")
    lines.append(f"  Vendor: {host.vendor_name() or 'unknown'} ({host.clock_identity.vendor_mac})")
    if host.ip_count():
        many = f" (primary {host.primary_ip()})" if host.has_multiple_ips() else ""
        lines.append(f"  IP addresses: {host.ip_count()}{many}")
        for ip, interfaces in host.ip_addresses.items():
            lines.append(f"    {ip} on {', '.join(interfaces)}")
    else:
        lines.append("  IP addresses: none (only named in responses)")
    lines.append(
        f"  Domain: {_value(host.domain_number)}  Version: {host.last_version or '-'}  "
        f"Correction: {host.last_correction_field or '-'}  "
        f"Last seen: {host.seconds_since_last_seen(now):.1f}s ago"
    )

    state = host.state
    if isinstance(state, TimeTransmitter):
        lines.append(f"  {describe_transmitter(state)}")
        lines.append(f"  {describe_utc(state)}")
        if state.last_sync_seen is not None:
            lines.append(f"  Last Sync/Follow_Up: {max(0.0, now - state.last_sync_seen):.1f}s ago")
    elif isinstance(state, TimeReceiver):
        lines.append(f"  {describe_receiver(state)} via {state.selection_source or '-'}")
        lines.append(f"  Last Delay_Resp: {format_ptp_time(state.last_delay_response_timestamp, None)}")
        lines.append(f"  Last PDelay_Resp: {format_ptp_time(state.last_pdelay_response_timestamp, None)}")

    counters = host.counters
    lines.append(
        f"  Sent {counters.total_sent}: Announce {counters.announce}, Sync {counters.sync}, "
        f"Follow_Up {counters.follow_up}, Delay_Req {counters.delay_req}, Delay_Resp {counters.delay_resp}, "
        f"PDelay_Req {counters.pdelay_req}, PDelay_Resp {counters.pdelay_resp}, "
        f"PDelay_Resp_Follow_Up {counters.pdelay_resp_follow_up}, Signaling {counters.signaling}, "
        f"Management {counters.management}"
    )
    lines.append(f"  Received (as requester): {counters.total_received}")

    history = host.get_packet_history()
    shown = history[-history_rows:]
    lines.append(f"  Packet history ({len(shown)} of {len(history)}, newest last):")
    for packet in shown:
        lines.append(f"    {describe_packet(packet)}")
    if not history:
        lines.append("    empty")
    return "\n".join(lines)


def render_status(tracker, interface_names: List[str], tree: bool = False,
                  host: Optional[ClockIdentity] = None) -> str:
    """
    Renders the PTP network status: elected transmitters per domain, every
    transmitter and receiver, and hosts without a role yet.

    Args:
        tracker (PtpTracker): The tracker to render.
        interface_names (list): Names of the monitored interfaces.
        tree (bool): Show transmitter -> receiver trees instead of lists.
        host (ClockIdentity): Append the detail view of this host.

    Returns:
        str: The status text.
    """
    now = tracker.now()
    local_ips = tracker.local_ips()
    lines = [
        "================ PTP Network Monitor ================",
        f"Interface(s): {', '.join(interface_names)}",
        f"Hosts: {len(tracker)}  Transmitters: {tracker.transmitter_count()}  "
        f"Receivers: {tracker.receiver_count()}  Listening: {tracker.listening_count()}",
        f"Last packet: {tracker.last_packet_age():.1f}s ago",
    ]
    pending = tracker.pending_packets()
    if pending is not None:
        lines.append(f"Replay: {pending} packet(s) pending, capture ends {format_epoch(tracker.reference_timestamp())}")
    if tracker.dropped_packets():
        lines.append(f"Dropped packets (queue full): {tracker.dropped_packets()}")
    lines.append("")

    lines.append("--- Primary Time Transmitter (BMCA) ---")
    winners = tracker.bmca_winners()
    if winners:
        for domain in sorted(winners):
            lines.append(f"  Domain {domain}: {tracker.bmca_winner(domain)}")
            previous = tracker.previous_bmca_winner(domain)
            if previous is not None:
                lines.append(f"    previous: {previous}")
    else:
        lines.append("  Searching...")
    lines.append("")

    if tree:
        lines.append("--- Hosts ---")
        for root in host_tree(tracker):
            _render_node(root, lines, now, local_ips)
        if not tracker.hosts():
            lines.append("  None detected.")
        lines.append("")
    else:
        _render_lists(tracker, lines, now, local_ips)

    if host is not None:
        lines.append(render_host_detail(tracker, host))
        lines.append("")
    lines.append(RULE)
    return "\n".join(lines)


def _render_lists(tracker, lines: List[str], now: float, local_ips) -> None:
    hosts = sorted(tracker.hosts(), key=_sort_key)

    lines.append("--- Time Transmitters ---")
    transmitters = [h for h in hosts if h.is_transmitter()]
    for host in transmitters:
        lines.append(f"- {describe_host(host, now, local_ips)}")
        lines.append(f"    {describe_transmitter(host.state)}")
        lines.append(f"    {describe_utc(host.state)}")
    if not transmitters:
        lines.append("  None detected.")
    lines.append("")

    lines.append("--- Time Receivers ---")
    receivers = [h for h in hosts if h.is_receiver()]
    for host in receivers:
        lines.append(f"- {describe_host(host, now, local_ips)}")
        lines.append(f"    {describe_receiver(host.state)}")
    if not receivers:
        lines.append("  None detected.")
    lines.append("")

    listening = [h for h in hosts if h.is_listening()]
    if listening:
        lines.append("--- Listening ---")
        for host in listening:
            lines.append(f"- {describe_host(host, now, local_ips)}")
        lines.append("")


def _render_node(node: TreeNode, lines: List[str], now: float, local_ips) -> None:
    indent = "  " * node.depth + ("└─ " if node.depth else "")
    lines.append(f"{indent}{describe_host(node.host, now, local_ips)}")
    if isinstance(node.host.state, TimeTransmitter):
        lines.append(f"{'  ' * node.depth}     {describe_transmitter(node.host.state)}")
    elif isinstance(node.host.state, TimeReceiver):
        lines.append(f"{'  ' * node.depth}     {describe_receiver(node.host.state)}")
    for child in node.children:
        _render_node(child, lines, now, local_ips)


def display_status(tracker, interface_names: List[str], tree: bool = False,
                   host: Optional[ClockIdentity] = None) -> None:
    """Clears the console and prints the current status."""
    os.system("cls" if os.name == "nt" else "clear")
    print(render_status(tracker, interface_names, tree, host))
