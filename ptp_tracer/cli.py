"""
Command line entry point: parses the options, opens the packet source and
runs the draw / sleep / scan loop until interrupted.
"""

import argparse
import logging
import os
import signal
import sys
import time
from typing import List, Optional

from . import __version__
from .capture import CaptureError, LiveCapture, PcapSource, select_interfaces
from .config import (
    DEFAULT_MAX_PACKET_HISTORY,
    DEFAULT_MAX_PACKETS_PER_SCAN,
    DEFAULT_QUEUE_SIZE,
    DEFAULT_UPDATE_INTERVAL_MS,
    TracerConfig,
)
from .display import display_status, render_status
from .messages import ClockIdentity
from .tracker import PtpTracker

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ptp-tracer",
        description="PTP Network Tracer - Monitors PTPv2 network traffic.",
    )
    parser.add_argument(
        "-i", "--interface", action="append",
        help="Network interface to monitor (e.g., eth0). Repeat for several; default: all suitable",
    )
    parser.add_argument(
        "-u", "--update-interval", type=int, default=DEFAULT_UPDATE_INTERVAL_MS,
        help="Refresh interval in milliseconds (default: %(default)s)",
    )
    parser.add_argument("--pcap", metavar="FILE", help="Replay a pcap file instead of capturing live")
    parser.add_argument(
        "--max-history", type=int, default=DEFAULT_MAX_PACKET_HISTORY,
        help="Packets kept per host (default: %(default)s)",
    )
    parser.add_argument(
        "--max-packets-per-scan", type=int, default=DEFAULT_MAX_PACKETS_PER_SCAN,
        help="Packets processed per refresh (default: %(default)s)",
    )
    parser.add_argument(
        "--queue-size", type=int, default=DEFAULT_QUEUE_SIZE,
        help="Capture queue bound, 0 for unbounded (default: %(default)s)",
    )
    parser.add_argument("--tree", action="store_true", help="Show transmitter -> receiver trees")
    parser.add_argument(
        "--host", metavar="CLOCK_ID",
        help="Show counters and packet history of one clock identity (e.g. 00:1b:21:ff:fe:0a:0b:0c)",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-file", metavar="PATH", help="Write log messages to this file")
    parser.add_argument("--once", action="store_true", help="Scan once, print the status and exit")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def configure_logging(debug: bool = False, log_file: Optional[str] = None) -> None:
    level = logging.DEBUG if debug else logging.INFO
    if log_file:
        handler: logging.Handler = logging.FileHandler(log_file)
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)
    # scapy is chatty about interfaces it cannot use
    logging.getLogger("scapy.runtime").setLevel(logging.ERROR)


def open_source(config: TracerConfig):
    """Starts the packet source for the configuration; raises CaptureError."""
    if config.pcap_path is not None:
        return PcapSource(config.pcap_path).start()
    interfaces = select_interfaces(config.interfaces)
    return LiveCapture(interfaces, config.queue_size).start()


class OperatorRequests:
    """
    Clear requests sent to a running tracer with signals:
    SIGUSR1 forgets every host, SIGUSR2 empties the packet history of the
    --host clock (or of every host when none is shown). The handlers only
    set flags; the loop applies them between scans.
    """

    def __init__(self, host: Optional[ClockIdentity] = None):
        self.host = host
        self.clear_hosts = False
        self.clear_history = False

    def install(self) -> None:
        if not hasattr(signal, "SIGUSR1"):
            logger.debug("Clear signals are not available on this platform")
            return
        signal.signal(signal.SIGUSR1, self._request_clear_hosts)
        signal.signal(signal.SIGUSR2, self._request_clear_history)

    def _request_clear_hosts(self, signum, frame) -> None:
        self.clear_hosts = True

    def _request_clear_history(self, signum, frame) -> None:
        self.clear_history = True

    def apply(self, tracker: PtpTracker) -> None:
        if self.clear_hosts:
            self.clear_hosts = False
            tracker.clear_hosts()
            logger.info("Cleared all hosts")
        if self.clear_history:
            self.clear_history = False
            if self.host is not None:
                tracker.clear_host_packet_history(self.host)
                logger.info(f"Cleared packet history of {self.host}")
            else:
                tracker.clear_all_packet_histories()
                logger.info("Cleared all packet histories")


def run_once(tracker: PtpTracker, interface_names: List[str], tree: bool = False,
             host: Optional[ClockIdentity] = None) -> str:
    """Drains the whole source, then renders the status once."""
    while tracker.scan() >= tracker.max_packets_per_scan:
        pass
    return render_status(tracker, interface_names, tree, host)


def run_loop(tracker: PtpTracker, config: TracerConfig, interface_names: List[str],
             requests: Optional[OperatorRequests] = None) -> None:
    while True:
        started = time.monotonic()
        display_status(tracker, interface_names, config.tree, config.host)
        remaining = config.update_interval - (time.monotonic() - started)
        if remaining > 0:
            time.sleep(remaining)
        if requests is not None:
            requests.apply(tracker)
        tracker.scan()


def main(argv: Optional[List[str]] = None) -> None:
    """
    Main function to start the PTP network tracer.
    Parses command-line arguments, checks for root privileges when capturing
    live, and runs the refresh loop.
    """
    args = build_parser().parse_args(argv)
    try:
        config = TracerConfig.from_args(args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    configure_logging(config.debug, config.log_file)
    logger.debug(f"Configuration: {config}")

    if config.live and os.geteuid() != 0:
        print("Error: This program must be run as root to capture network packets.", file=sys.stderr)
        sys.exit(1)

    try:
        source = open_source(config)
    except CaptureError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    tracker = PtpTracker(
        source,
        max_packet_history=config.max_packet_history,
        max_packets_per_scan=config.max_packets_per_scan,
        # replays are aged by capture time
        clock=source.clock if isinstance(source, PcapSource) else time.monotonic,
    )
    interface_names = source.interface_names

    if config.once:
        try:
            print(run_once(tracker, interface_names, config.tree, config.host))
        finally:
            source.close()
        return

    if config.live:
        print(f"Starting PTP monitor on interface(s) {', '.join(interface_names)}...")
    print("Press Ctrl+C to stop.")
    requests = OperatorRequests(config.host)
    requests.install()
    try:
        run_loop(tracker, config, interface_names, requests)
    except KeyboardInterrupt:
        print("\nStopping PTP monitor.")
        source.close()
        sys.exit(0)


if __name__ == "__main__":
    main()
