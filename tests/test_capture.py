import threading
from types import SimpleNamespace

import pytest
from scapy.all import ARP, IP, UDP, Dot1Q, Ether, Raw, wrpcap

from ptp_tracer import capture
from ptp_tracer.capture import (
    PCAP_INTERFACE,
    CaptureError,
    LiveCapture,
    PcapSource,
    extract_ptp_packet,
    select_interfaces,
)

from ptp_tracer.tracker import PtpTracker

from . import ptp_packets as pkt

GM = pkt.identity(1)
RECEIVER = pkt.identity(3)


def ptp_frame(payload, port=319, vlan=None, src="10.0.0.1", dst="224.0.1.129"):
    ether = Ether(src="00:1b:21:0a:0b:0c", dst="01:00:5e:00:01:81")
    if vlan is not None:
        ether = ether / Dot1Q(vlan=vlan)
    return ether / IP(src=src, dst=dst) / UDP(sport=port, dport=port) / Raw(load=payload)


def test_extracts_udp_payload_and_addressing():
    payload = pkt.sync(GM)
    packet = extract_ptp_packet(ptp_frame(payload), "eth0")
    assert packet.payload == payload
    assert packet.source_ip == "10.0.0.1"
    assert packet.dest_ip == "224.0.1.129"
    assert packet.source_port == 319
    assert packet.dest_port == 319
    assert packet.interface == "eth0"
    assert packet.source_mac == "00:1b:21:0a:0b:0c"
    assert packet.vlan_id is None


def test_vlan_tag_is_reported():
    packet = extract_ptp_packet(ptp_frame(pkt.announce(GM), port=320, vlan=100), "eth1")
    assert packet.vlan_id == 100
    assert packet.dest_port == 320


def test_non_ptp_frames_are_ignored():
    assert extract_ptp_packet(ptp_frame(b"dns", port=53), "eth0") is None
    assert extract_ptp_packet(Ether() / ARP(), "eth0") is None


def test_pcap_replay(tmp_path):
    path = tmp_path / "ptp.pcap"
    wrpcap(str(path), [
        ptp_frame(pkt.announce(GM), port=320),
        ptp_frame(b"not ptp", port=53),
        ptp_frame(pkt.sync(GM)),
    ])
    source = PcapSource(str(path)).start()
    assert source.remaining() == 2
    assert source.interface_names == [PCAP_INTERFACE]
    assert source.last_timestamp is not None

    first = source.try_recv()
    assert first.interface == PCAP_INTERFACE
    assert first.dest_port == 320
    assert source.try_recv().dest_port == 319
    assert source.try_recv() is None
    source.close()


def test_missing_pcap_file(tmp_path):
    with pytest.raises(CaptureError):
        PcapSource(str(tmp_path / "missing.pcap")).start()


def test_bounded_queue_drops_newest():
    live = LiveCapture([("eth0", "10.0.0.5")], queue_size=1)
    first = pkt.raw(pkt.sync(GM, sequence_id=1))
    second = pkt.raw(pkt.sync(GM, sequence_id=2))
    assert live.put(first)
    assert not live.put(second)
    assert live.dropped == 1
    assert live.try_recv() is first
    assert live.try_recv() is None


def test_unbounded_queue_by_default():
    live = LiveCapture([("eth0", "10.0.0.5")])
    for i in range(500):
        assert live.put(pkt.raw(pkt.sync(GM, sequence_id=i)))
    assert live.dropped == 0
    assert live.interface_names == ["eth0"]


@pytest.fixture
def fake_interfaces(monkeypatch):
    addresses = {
        "lo": "127.0.0.1",
        "eth0": "10.0.0.5",
        "eth1": "0.0.0.0",
        "docker0": "172.17.0.1",
        "enp3s0": "192.168.1.20",
    }
    monkeypatch.setattr(capture, "get_if_list", lambda: list(addresses))
    monkeypatch.setattr(capture, "get_if_addr", lambda name: addresses[name])
    return addresses


def test_select_interfaces_filters_automatically(fake_interfaces):
    assert select_interfaces() == [("eth0", "10.0.0.5"), ("enp3s0", "192.168.1.20")]


def test_select_named_interfaces(fake_interfaces):
    assert select_interfaces(["docker0"]) == [("docker0", "172.17.0.1")]
    with pytest.raises(CaptureError):
        select_interfaces(["eth1"])


def test_select_interfaces_with_nothing_usable(monkeypatch):
    monkeypatch.setattr(capture, "get_if_list", lambda: ["lo", "eth0"])
    monkeypatch.setattr(capture, "get_if_addr", lambda name: "0.0.0.0")
    with pytest.raises(CaptureError):
        select_interfaces()


def test_pcap_keeps_truncated_payload_bytes(tmp_path):
    path = tmp_path / "short.pcap"
    truncated = pkt.sync(GM)[:40]
    wrpcap(str(path), [ptp_frame(truncated)])
    source = PcapSource(str(path)).start()
    assert source.try_recv().payload == truncated


def test_pcap_replay_clock_follows_capture_time(tmp_path):
    path = tmp_path / "timed.pcap"
    sync = ptp_frame(pkt.sync(GM))
    sync.time = 1700000000.0
    delay_req = ptp_frame(pkt.delay_req(RECEIVER), src="10.0.0.3")
    delay_req.time = 1700000040.0
    wrpcap(str(path), [sync, delay_req])

    source = PcapSource(str(path)).start()
    assert source.clock() == 1700000000.0
    tracker = PtpTracker(source, clock=source.clock)
    assert tracker.process_packets() == 2
    assert source.clock() == source.last_timestamp == 1700000040.0

    # 40 s of capture time between Sync and Delay_Req, however fast the replay
    state = tracker.host(RECEIVER).state
    assert state.selected_transmitter_identity == GM
    assert state.selected_transmitter_confidence == 0.5


def test_pcap_replay_clock_never_runs_backwards(tmp_path):
    path = tmp_path / "unordered.pcap"
    frames = [ptp_frame(pkt.sync(GM, sequence_id=i)) for i in range(3)]
    for frame, when in zip(frames, (100.0, 130.0, 120.0)):
        frame.time = when
    wrpcap(str(path), frames)

    source = PcapSource(str(path)).start()
    seen = []
    while source.try_recv() is not None:
        seen.append(source.clock())
    assert seen == [100.0, 130.0, 130.0]


def test_unopenable_interface_raises_capture_error(caplog):
    live = LiveCapture([("nosuchif0", None)])
    with pytest.raises(CaptureError):
        live.start()
    assert "nosuchif0" in caplog.text
    live.close()


class FakeSniffer:
    """Stands in for AsyncSniffer: 'bad*' interfaces fail in the sniffer
    thread, 'flaky*' ones raise when stopped."""

    def __init__(self, iface, started_callback=None, **kwargs):
        self.iface = iface
        self.started_callback = started_callback
        self.exception = None
        self.running = False
        self.stopped = False
        self.thread = None

    def start(self):
        if self.iface.startswith("bad"):
            self.exception = OSError(19, "No such device")
            self.thread = threading.Thread(target=lambda: None)
            return
        self.running = True
        self.thread = SimpleNamespace(is_alive=lambda: True)
        self.started_callback()

    def stop(self):
        self.running = False
        self.stopped = True
        if self.iface.startswith("flaky"):
            raise OSError(100, "Network is down")


class FakeSocket:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


@pytest.fixture
def sniffers(monkeypatch):
    created = {}

    def make_sniffer(iface, **kwargs):
        created[iface] = FakeSniffer(iface, **kwargs)
        return created[iface]

    monkeypatch.setattr(capture, "AsyncSniffer", make_sniffer)
    monkeypatch.setattr(capture, "join_multicast_group", lambda name, address: FakeSocket())
    return created


def test_interfaces_failing_in_the_sniffer_thread_are_dropped(sniffers, caplog):
    live = LiveCapture([("bad0", "10.0.0.5"), ("eth0", "10.0.0.6")]).start()
    assert live.interface_names == ["eth0"]
    assert "Failed to open capture on interface bad0" in caplog.text
    assert "No such device" in caplog.text
    # no multicast membership is kept for an interface that is not captured
    assert len(live._multicast_sockets) == 1
    live.close()
    assert sniffers["eth0"].stopped


def test_no_interface_opened_raises_capture_error(sniffers):
    with pytest.raises(CaptureError):
        LiveCapture([("bad0", None), ("bad1", None)]).start()


def test_close_keeps_going_after_a_failing_stop(sniffers, caplog):
    live = LiveCapture([("flaky0", "10.0.0.5"), ("eth0", "10.0.0.6")]).start()
    sockets = list(live._multicast_sockets)
    live.close()
    assert "Capture on interface flaky0 stopped with an error" in caplog.text
    assert sniffers["flaky0"].stopped
    assert sniffers["eth0"].stopped
    assert all(sock.closed for sock in sockets)
    # closing twice is harmless
    live.close()


def test_live_capture_as_context_manager(sniffers):
    with LiveCapture([("eth0", None)]).start() as live:
        live.put(pkt.raw(pkt.sync(GM)))
        assert live.try_recv() is not None
    assert sniffers["eth0"].stopped
