from ptp_tracer.display import (
    describe_utc,
    format_epoch,
    format_ptp_time,
    host_tree,
    render_host_detail,
    render_status,
)
from ptp_tracer.host import TimeTransmitter
from ptp_tracer.messages import PtpFlags, PtpTimestamp
from ptp_tracer.tracker import PtpTracker

from . import ptp_packets as pkt
from .ptp_packets import ReplaySource

GM = pkt.identity(1)
BACKUP = pkt.identity(2)
RECEIVER = pkt.identity(3)
LOST = pkt.identity(4)


def populate(tracker):
    for payload in (
        pkt.announce(GM, priority1=64, clock_class=6),
        pkt.announce(BACKUP, priority1=128),
        pkt.follow_up(GM, origin=(1700000037, 0)),
        pkt.delay_resp(GM, RECEIVER),
        pkt.delay_req(LOST, domain=9),
    ):
        tracker.handle_packet(pkt.raw(payload))
    tracker.scan()


def test_status_lists_winner_and_roles(tracker):
    populate(tracker)
    text = render_status(tracker, ["eth0"])
    assert "Interface(s): eth0" in text
    assert f"Domain 0: {GM}" in text
    assert "Time Transmitters" in text
    assert str(BACKUP) in text
    assert f"Transmitter: {GM} (confidence 100%)" in text
    assert "no sync traffic" in text
    assert "2023-11-14 22:13:20.000 UTC" in text


def test_status_without_hosts(tracker):
    text = render_status(tracker, ["eth0", "eth1"])
    assert "Searching..." in text
    assert "None detected." in text


def test_dropped_packets_are_shown(tracker, source):
    source.dropped = 3
    assert "Dropped packets (queue full): 3" in render_status(tracker, ["eth0"])


def test_tree_groups_receivers_under_transmitter(tracker):
    populate(tracker)
    roots = host_tree(tracker)
    assert roots[0].host.clock_identity == GM
    assert [child.host.clock_identity for child in roots[0].children] == [RECEIVER]
    assert {root.host.clock_identity for root in roots} == {GM, BACKUP, LOST}

    text = render_status(tracker, ["eth0"], tree=True)
    assert f"└─ TR  {RECEIVER}" in text


def test_format_ptp_time():
    assert format_ptp_time(None, 37) == "N/A"
    assert format_ptp_time(PtpTimestamp(37, 5_000_000), 37) == "1970-01-01 00:00:00.005 UTC"


def test_utc_offset_and_leap_flags():
    state = TimeTransmitter(current_utc_offset=37, announce_flags=PtpFlags.CURRENT_UTC_OFFSET_VALID | PtpFlags.LEAP61)
    assert describe_utc(state) == "UTC offset: 37s (valid) | Leap second pending: +1s"
    assert describe_utc(TimeTransmitter()) == "UTC offset: N/A"


def test_host_detail_of_a_transmitter(tracker, clock):
    tracker.handle_packet(pkt.raw(pkt.announce(GM, priority1=64), source_ip="10.0.0.1", interface="eth0"))
    clock.advance(2)
    sync = pkt.header(pkt.MessageType.SYNC, GM, sequence_id=7, flags=0x0200, correction=65536,
                      log_interval=-3) + pkt.timestamp()
    tracker.handle_packet(pkt.raw(sync, source_ip="10.0.0.1", interface="eth1", port=319, timestamp=1700000000.0))
    tracker.handle_packet(pkt.raw(pkt.sync(GM), source_ip="192.168.1.1", interface="eth1"))
    tracker.scan()
    clock.advance(1)

    text = render_host_detail(tracker, GM)
    assert f"--- Host {GM} ---" in text
    assert "Role: Primary Time Transmitter" in text
    assert "IP addresses: 2 (primary 10.0.0.1)" in text
    assert "10.0.0.1 on eth0, eth1" in text
    assert "192.168.1.1 on eth1" in text
    assert "Last Sync/Follow_Up: 1.0s ago" in text
    assert "Sent 3: Announce 1, Sync 2," in text
    assert "Packet history (3 of 3, newest last):" in text
    assert (
        f"2023-11-14 22:13:20.000 UTC  {'SYNC':<22} {'event':<7} 10.0.0.1:319 on eth1 | "
        "seq 7 | flags TWO_STEP | interval 8/s | corr 1.000 ns"
    ) in text
    assert f"{'ANNOUNCE':<22} general" in text


def test_host_detail_of_a_receiver(tracker):
    tracker.handle_packet(pkt.raw(pkt.delay_resp(GM, RECEIVER, receive=(1700000037, 0))))
    text = render_host_detail(tracker, RECEIVER)
    assert "Role: Time Receiver" in text
    assert "IP addresses: none" in text
    assert f"Transmitter: {GM} (confidence 100%) via delay_resp" in text
    assert "Last Delay_Resp: 2023-11-14 22:13:57.000 UTC" in text
    assert "Received (as requester): 1" in text


def test_host_detail_limits_history_rows(tracker):
    for i in range(30):
        tracker.handle_packet(pkt.raw(pkt.sync(GM, sequence_id=i)))
    text = render_host_detail(tracker, GM, history_rows=5)
    assert "Packet history (5 of 30, newest last):" in text
    assert "seq 29 |" in text
    assert "seq 24 |" not in text


def test_host_detail_for_unknown_host(tracker):
    assert "Not seen yet." in render_host_detail(tracker, LOST)


def test_status_appends_host_detail(tracker):
    populate(tracker)
    text = render_status(tracker, ["eth0"], host=GM)
    assert f"--- Host {GM} ---" in text
    assert text.endswith("=" * 60)
    assert f"--- Host {GM} ---" in render_status(tracker, ["eth0"], tree=True, host=GM)


def test_replay_progress_is_shown(clock):
    tracker = PtpTracker(ReplaySource([pkt.raw(pkt.sync(GM))]), clock=clock)
    text = render_status(tracker, ["pcap"])
    assert "Replay: 1 packet(s) pending, capture ends 2023-11-14 22:13:20.000 UTC" in text
    assert "Replay:" not in render_status(PtpTracker(clock=clock), ["eth0"])


def test_format_epoch():
    assert format_epoch(None) == "N/A"
    assert format_epoch(1.5) == "1970-01-01 00:00:01.500 UTC"
