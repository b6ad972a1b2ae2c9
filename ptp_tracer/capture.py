"""
Packet sources feeding the tracker.

LiveCapture sniffs every monitored interface in its own scapy AsyncSniffer
thread and pushes the PTP payloads onto one shared queue. PcapSource replays
a capture file. Both are drained by the tracker with the non-blocking
try_recv(); nothing else is shared between the capture threads and the
tracker.
"""

import logging
import queue
import socket
import time
from dataclasses import dataclass
from threading import Event, Lock
from typing import List, Optional, Tuple

from scapy.all import IP, UDP, AsyncSniffer, Dot1Q, Ether, PcapReader, conf, get_if_addr, get_if_list
from scapy.error import Scapy_Exception

from .config import (
    CAPTURE_FILTER,
    DEFAULT_QUEUE_SIZE,
    PTP_MULTICAST_GROUPS,
    PTP_PORTS,
    SNIFFER_START_TIMEOUT,
    VIRTUAL_INTERFACE_PREFIXES,
)

logger = logging.getLogger(__name__)

PCAP_INTERFACE = "pcap"

Interface = Tuple[str, Optional[str]]  # (name, IPv4 address)


class CaptureError(RuntimeError):
    """Capture cannot be started at all."""


@dataclass(frozen=True)
class RawPacket:
    payload: bytes
    source_ip: str
    source_port: int
    dest_ip: str
    dest_port: int
    interface: str
    timestamp: float
    source_mac: Optional[str] = None
    dest_mac: Optional[str] = None
    vlan_id: Optional[int] = None


def udp_payload(udp) -> bytes:
    payload = udp.payload
    # A dissected frame keeps its exact bytes; rebuilding it through scapy's
    # PTP layer would fill a truncated message with default fields.
    original = getattr(payload, "original", None)
    return bytes(original) if original else bytes(payload)


def extract_ptp_packet(frame, interface: str) -> Optional[RawPacket]:
    """
    Strips Ethernet, 802.1Q, IPv4 and UDP from a captured frame.

    Args:
        frame (Packet): The frame as dissected by scapy.
        interface (str): Name of the interface the frame arrived on.

    Returns:
        RawPacket: The UDP payload with its addressing, or None if the frame
        is not IPv4/UDP addressed to port 319 or 320.
    """
    if not frame.haslayer(IP) or not frame.haslayer(UDP):
        return None
    udp = frame[UDP]
    if udp.dport not in PTP_PORTS:
        return None
    ip = frame[IP]
    ether = frame[Ether] if frame.haslayer(Ether) else None
    return RawPacket(
        payload=udp_payload(udp),
        source_ip=ip.src,
        source_port=udp.sport,
        dest_ip=ip.dst,
        dest_port=udp.dport,
        interface=interface,
        timestamp=float(frame.time),
        source_mac=ether.src if ether is not None else None,
        dest_mac=ether.dst if ether is not None else None,
        vlan_id=frame[Dot1Q].vlan if frame.haslayer(Dot1Q) else None,
    )


def interface_ipv4(name: str) -> Optional[str]:
    try:
        address = get_if_addr(name)
    except (OSError, ValueError, KeyError):
        return None
    if not address or address == "0.0.0.0":
        return None
    return address


def is_suitable_interface(name: str) -> bool:
    if name == conf.loopback_name:
        return False
    return not name.startswith(VIRTUAL_INTERFACE_PREFIXES)


def select_interfaces(names: Optional[List[str]] = None) -> List[Interface]:
    """
    Resolves the interfaces to monitor.

    Args:
        names (list): Interface names given by the operator. If empty, every
            suitable interface that has an IPv4 address is used.

    Returns:
        list: (name, IPv4 address) pairs.

    Raises:
        CaptureError: If a named interface has no IPv4 address, or no
            suitable interface is left.
    """
    interfaces: List[Interface] = []
    if names:
        for name in names:
            address = interface_ipv4(name)
            if address is None:
                raise CaptureError(f"Interface {name} has no IPv4 address")
            interfaces.append((name, address))
    else:
        for name in get_if_list():
            if not is_suitable_interface(name):
                logger.debug(f"Excluding interface: {name} (filtered)")
                continue
            address = interface_ipv4(name)
            if address is None:
                logger.debug(f"Excluding interface: {name} (no IPv4 address)")
                continue
            interfaces.append((name, address))

    if not interfaces:
        raise CaptureError(
            "No suitable interfaces available for PTP monitoring; "
            "specify one with --interface (e.g. --interface eth0)"
        )
    return interfaces


def join_multicast_group(name: str, address: str) -> Optional[socket.socket]:
    """
    Joins the PTP multicast groups on one interface so that switches with
    IGMP snooping forward the traffic to us. The returned socket must stay
    open to keep the membership.

    Returns:
        socket: The socket holding the membership, or None if no group
        could be joined.
    """
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    except OSError as e:
        logger.warning(f"Could not open multicast socket on {name}: {e}")
        return None

    joined = 0
    for group in PTP_MULTICAST_GROUPS:
        membership = socket.inet_aton(group) + socket.inet_aton(address)
        try:
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, membership)
            joined += 1
        except OSError as e:
            logger.warning(f"Could not join multicast group {group} on {name}: {e}")
    if not joined:
        sock.close()
        return None
    return sock


class LiveCapture:
    def __init__(self, interfaces: List[Interface], queue_size: int = DEFAULT_QUEUE_SIZE):
        self.interfaces = list(interfaces)
        # maxsize 0 makes the queue unbounded
        self._queue = queue.Queue(maxsize=queue_size)
        self._lock = Lock()
        self._dropped = 0
        self._sniffers: List[Tuple[str, AsyncSniffer]] = []
        self._multicast_sockets: List[socket.socket] = []

    @property
    def interface_names(self) -> List[str]:
        return [name for name, _ in self.interfaces]

    @property
    def dropped(self) -> int:
        with self._lock:
            return self._dropped

    def start(self) -> "LiveCapture":
        for name, address in self.interfaces:
            sniffer = self._start_sniffer(name)
            if sniffer is None:
                continue
            self._sniffers.append((name, sniffer))
            if address is not None:
                sock = join_multicast_group(name, address)
                if sock is not None:
                    self._multicast_sockets.append(sock)

        if not self._sniffers:
            self.close()
            raise CaptureError("Packet capture could not be started on any interface")
        opened = {name for name, _ in self._sniffers}
        self.interfaces = [i for i in self.interfaces if i[0] in opened]
        logger.info(
            f"Capture started on {len(self._sniffers)} interface(s) for PTP event and general "
            f"messages (ports {PTP_PORTS[0]}/{PTP_PORTS[1]}): {', '.join(self.interface_names)}"
        )
        return self

    def _start_sniffer(self, name: str) -> Optional[AsyncSniffer]:
        """
        Starts a sniffer on one interface and waits until its socket is open.

        AsyncSniffer opens the socket inside its own thread, so a failure does
        not surface from start(): it ends the thread and is kept in
        sniffer.exception.

        Returns:
            AsyncSniffer: The running sniffer, or None if the interface
                could not be opened.
        """
        started = Event()
        sniffer = AsyncSniffer(
            iface=name,
            filter=CAPTURE_FILTER,
            prn=self._make_callback(name),
            store=False,
            promisc=True,
            started_callback=started.set,
        )
        sniffer.start()
        deadline = time.monotonic() + SNIFFER_START_TIMEOUT
        while not started.wait(0.05):
            if not sniffer.thread.is_alive() or time.monotonic() > deadline:
                break

        if sniffer.exception is not None or not sniffer.thread.is_alive():
            reason = sniffer.exception or "sniffer thread exited"
            logger.warning(f"Failed to open capture on interface {name}: {reason}")
            if sniffer.thread.is_alive():
                self._stop_sniffer(name, sniffer)
            return None
        if not started.is_set():
            logger.debug(f"Sniffer on interface {name} still starting after {SNIFFER_START_TIMEOUT}s")
        return sniffer

    @staticmethod
    def _stop_sniffer(name: str, sniffer: AsyncSniffer) -> None:
        try:
            if sniffer.running:
                sniffer.stop()
        except Exception as e:
            logger.warning(f"Capture on interface {name} stopped with an error: {e}")

    def _make_callback(self, interface: str):
        def enqueue(frame):
            packet = extract_ptp_packet(frame, interface)
            if packet is not None:
                self.put(packet)
        return enqueue

    def put(self, packet: RawPacket) -> bool:
        """Queues a packet, dropping it if the bounded queue is full."""
        try:
            self._queue.put_nowait(packet)
        except queue.Full:
            with self._lock:
                self._dropped += 1
            return False
        return True

    def try_recv(self) -> Optional[RawPacket]:
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def close(self) -> None:
        for name, sniffer in self._sniffers:
            self._stop_sniffer(name, sniffer)
        self._sniffers = []
        for sock in self._multicast_sockets:
            try:
                sock.close()
            except OSError as e:
                logger.debug(f"Closing multicast socket failed: {e}")
        self._multicast_sockets = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class PcapSource:
    """
    Replays the PTP packets of a capture file.

    The source keeps a replay position: the capture timestamp of the newest
    packet handed out so far. clock() returns it, so the tracker can age
    Sync senders by capture time instead of by wall-clock time.
    """

    def __init__(self, path: str):
        self.path = path
        self.interfaces: List[Interface] = [(PCAP_INTERFACE, None)]
        self.dropped = 0
        self.last_timestamp: Optional[float] = None
        self._packets: List[RawPacket] = []
        self._index = 0
        self._position = 0.0

    @property
    def interface_names(self) -> List[str]:
        return [PCAP_INTERFACE]

    def start(self) -> "PcapSource":
        packets = []
        try:
            with PcapReader(self.path) as reader:
                for frame in reader:
                    packet = extract_ptp_packet(frame, PCAP_INTERFACE)
                    if packet is None:
                        continue
                    if self.last_timestamp is None or packet.timestamp > self.last_timestamp:
                        self.last_timestamp = packet.timestamp
                    packets.append(packet)
        except (OSError, Scapy_Exception) as e:
            raise CaptureError(f"Cannot read pcap file {self.path}: {e}") from e

        self._packets = packets
        self._index = 0
        self._position = packets[0].timestamp if packets else 0.0
        logger.info(f"Loaded {len(packets)} PTP packets from pcap file: {self.path}")
        return self

    def clock(self) -> float:
        return self._position

    def remaining(self) -> int:
        return len(self._packets) - self._index

    def try_recv(self) -> Optional[RawPacket]:
        if self._index >= len(self._packets):
            return None
        packet = self._packets[self._index]
        self._index += 1
        # capture files are not always in time order
        self._position = max(self._position, packet.timestamp)
        return packet

    def close(self) -> None:
        self._packets = []
        self._index = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
