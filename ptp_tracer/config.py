"""
Constants and runtime configuration for the PTP tracer.
"""

import argparse
from dataclasses import dataclass, field
from typing import List, Optional

from .messages import ClockIdentity

# --- Constants ---
PTP_EVENT_PORT = 319
PTP_GENERAL_PORT = 320
PTP_PORTS = (PTP_EVENT_PORT, PTP_GENERAL_PORT)
PTP_PRIMARY_MULTICAST = "224.0.1.129"
PTP_PDELAY_MULTICAST = "224.0.0.107"
PTP_MULTICAST_GROUPS = (PTP_PRIMARY_MULTICAST, PTP_PDELAY_MULTICAST)
CAPTURE_FILTER = f"udp and (port {PTP_EVENT_PORT} or port {PTP_GENERAL_PORT})"

DEFAULT_UPDATE_INTERVAL_MS = 1000
DEFAULT_MAX_PACKET_HISTORY = 1000
DEFAULT_MAX_PACKETS_PER_SCAN = 100
DEFAULT_QUEUE_SIZE = 0  # 0 = unbounded
DEFAULT_HISTORY_ROWS = 20  # packets listed in the host detail view

SNIFFER_START_TIMEOUT = 2.0  # seconds to wait for a sniffer to open its socket

SYNC_RECENT_SECONDS = 10.0  # Sync younger than this gives full confidence
SYNC_EXPIRY_SECONDS = 60.0  # Sync senders are forgotten after this
STALE_SYNC_CONFIDENCE = 0.5

# Interfaces skipped when no interface is named explicitly
VIRTUAL_INTERFACE_PREFIXES = (
    "veth", "docker", "br-", "virbr", "vmnet", "tun", "tap", "wg", "dummy",
    "bond", "team", "macvlan", "vlan", "lo", "flannel", "cni0", "wl", "wlan",
    "ww", "idrac",
)


@dataclass
class TracerConfig:
    interfaces: List[str] = field(default_factory=list)
    update_interval_ms: int = DEFAULT_UPDATE_INTERVAL_MS
    pcap_path: Optional[str] = None
    max_packet_history: int = DEFAULT_MAX_PACKET_HISTORY
    max_packets_per_scan: int = DEFAULT_MAX_PACKETS_PER_SCAN
    queue_size: int = DEFAULT_QUEUE_SIZE
    tree: bool = False
    debug: bool = False
    log_file: Optional[str] = None
    once: bool = False
    host: Optional[ClockIdentity] = None

    def __post_init__(self):
        if self.update_interval_ms < 1:
            raise ValueError(f"update interval must be at least 1 ms, got {self.update_interval_ms}")
        if self.max_packet_history < 1:
            raise ValueError(f"packet history must hold at least 1 packet, got {self.max_packet_history}")
        if self.max_packets_per_scan < 1:
            raise ValueError(f"at least 1 packet per scan is required, got {self.max_packets_per_scan}")
        if self.queue_size < 0:
            raise ValueError(f"queue size cannot be negative, got {self.queue_size}")

    @property
    def update_interval(self) -> float:
        """The refresh interval in seconds."""
        return self.update_interval_ms / 1000.0

    @property
    def live(self) -> bool:
        return self.pcap_path is None

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "TracerConfig":
        return cls(
            interfaces=list(args.interface or []),
            update_interval_ms=args.update_interval,
            pcap_path=args.pcap,
            max_packet_history=args.max_history,
            max_packets_per_scan=args.max_packets_per_scan,
            queue_size=args.queue_size,
            tree=args.tree,
            debug=args.debug,
            log_file=args.log_file,
            once=args.once,
            host=ClockIdentity.from_string(args.host) if args.host else None,
        )
