"""
PTP (IEEE 1588-2008 / 2019) message codec.

Turns the UDP payload of a datagram sent to port 319 or 320 into a typed
header and, per message type, a typed body. Every field is read at a fixed
offset after the buffer length has been checked, so truncated or hostile
input only ever produces a PtpParseError.

Header layout (34 octets):
    0   majorSdoId (high nibble) | messageType (low nibble)
    1   minorVersionPTP (high nibble) | versionPTP (low nibble)
    2   messageLength (2)
    4   domainNumber
    5   minorSdoId
    6   flagField (2)
    8   correctionField (8, signed, 2^-16 ns)
    16  messageTypeSpecific (4)
    20  sourcePortIdentity: clockIdentity (8) + portNumber (2)
    30  sequenceId (2)
    32  controlField
    33  logMessageInterval (signed)
"""

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, NamedTuple, Optional, Union

from .oui import lookup_vendor

HEADER_LENGTH = 34
PTP_VERSION = 2
TIMESTAMP_LENGTH = 10
PORT_IDENTITY_LENGTH = 10
LOG_INTERVAL_UNICAST = 0x7F


class PtpParseError(ValueError):
    """The buffer does not hold a recognizable PTPv2 message."""


def bigint(data: bytes, signed: bool = False) -> int:
    return int.from_bytes(data, byteorder="big", signed=signed)


class MessageType(enum.IntEnum):
    def __str__(self):
        return self.name

    # 0x0-0x3 are event messages, timestamped on port 319
    SYNC = 0x0
    DELAY_REQ = 0x1
    PDELAY_REQ = 0x2
    PDELAY_RESP = 0x3
    # 0x8-0xD are general messages on port 320
    FOLLOW_UP = 0x8
    DELAY_RESP = 0x9
    PDELAY_RESP_FOLLOW_UP = 0xA
    ANNOUNCE = 0xB
    SIGNALING = 0xC
    MANAGEMENT = 0xD

    @property
    def is_event(self) -> bool:
        return self.value < 0x8


# Minimum total buffer length per message type, header included
MIN_MESSAGE_LENGTH = {
    MessageType.SYNC: 44,
    MessageType.DELAY_REQ: 44,
    MessageType.PDELAY_REQ: 54,
    MessageType.PDELAY_RESP: 54,
    MessageType.FOLLOW_UP: 44,
    MessageType.DELAY_RESP: 54,
    MessageType.PDELAY_RESP_FOLLOW_UP: 54,
    MessageType.ANNOUNCE: 64,
    MessageType.SIGNALING: HEADER_LENGTH,
    MessageType.MANAGEMENT: HEADER_LENGTH,
}


class PtpFlags(enum.IntFlag):
    # flagField octet 0 is the high byte of the 16 bit value
    ALTERNATE_MASTER = 0x0100
    TWO_STEP = 0x0200
    UNICAST = 0x0400
    PROFILE_SPECIFIC_1 = 0x2000
    PROFILE_SPECIFIC_2 = 0x4000
    # octet 1, Announce only
    LEAP61 = 0x0001
    LEAP59 = 0x0002
    CURRENT_UTC_OFFSET_VALID = 0x0004
    PTP_TIMESCALE = 0x0008
    TIME_TRACEABLE = 0x0010
    FREQUENCY_TRACEABLE = 0x0020
    SYNCHRONIZATION_UNCERTAIN = 0x0040


class ClockIdentity(bytes):
    """Eight raw octets identifying a PTP clock, ordered byte-wise."""

    LENGTH = 8

    def __new__(cls, value: bytes = b"\x00" * 8):
        value = bytes(value)
        if len(value) != cls.LENGTH:
            raise ValueError(f"clock identity must be {cls.LENGTH} bytes, got {len(value)}")
        return super().__new__(cls, value)

    @classmethod
    def from_string(cls, text: str) -> "ClockIdentity":
        """Accepts 'aa:bb:cc:ff:fe:dd:ee:ff', 'aabbcc.fffe.ddeeff' or plain hex."""
        digits = "".join(ch for ch in text if ch not in ":.-")
        return cls(bytes.fromhex(digits))

    def __str__(self):
        return ":".join(f"{b:02x}" for b in self)

    def __repr__(self):
        return f"ClockIdentity('{self}')"

    @property
    def vendor_prefix(self) -> bytes:
        # EUI-64 built from a MAC: drop the inserted ff:fe in the middle
        return self[:3] + self[5:]

    @property
    def vendor_mac(self) -> str:
        return ":".join(f"{b:02x}" for b in self.vendor_prefix)

    def vendor_name(self) -> Optional[str]:
        return lookup_vendor(self.vendor_mac)


class PortIdentity(NamedTuple):
    clock_identity: ClockIdentity
    port_number: int

    def __str__(self):
        return f"{self.clock_identity}-{self.port_number}"

    @classmethod
    def from_bytes(cls, data: bytes) -> "PortIdentity":
        return cls(ClockIdentity(data[0:8]), bigint(data[8:10]))


class PtpTimestamp(NamedTuple):
    seconds: int
    nanoseconds: int

    def __str__(self):
        return f"{self.seconds}.{self.nanoseconds:09d}"

    @classmethod
    def from_bytes(cls, data: bytes) -> "PtpTimestamp":
        return cls(bigint(data[0:6]), bigint(data[6:10]))


class CorrectionField(NamedTuple):
    raw: int

    @property
    def nanoseconds(self) -> float:
        return self.raw / 65536

    def __str__(self):
        return f"{self.nanoseconds:.3f} ns"


@dataclass(frozen=True)
class PtpHeader:
    message_type: MessageType
    major_sdo_id: int
    version: int
    minor_version: int
    message_length: int
    domain_number: int
    minor_sdo_id: int
    flags: int
    correction_field: CorrectionField
    source_port_identity: PortIdentity
    sequence_id: int
    control_field: int
    log_message_interval: int

    @property
    def clock_identity(self) -> ClockIdentity:
        return self.source_port_identity.clock_identity

    @property
    def version_text(self) -> str:
        return f"{self.version}.{self.minor_version}"

    @property
    def flag_names(self) -> List[str]:
        return flag_names(self.flags)


@dataclass(frozen=True)
class AnnounceMessage:
    header: PtpHeader
    origin_timestamp: PtpTimestamp
    current_utc_offset: int
    priority1: int
    clock_class: int
    clock_accuracy: int
    offset_scaled_log_variance: int
    priority2: int
    grandmaster_identity: ClockIdentity
    steps_removed: int
    time_source: int


@dataclass(frozen=True)
class SyncMessage:
    header: PtpHeader
    origin_timestamp: PtpTimestamp


@dataclass(frozen=True)
class FollowUpMessage:
    header: PtpHeader
    precise_origin_timestamp: PtpTimestamp


@dataclass(frozen=True)
class DelayReqMessage:
    header: PtpHeader
    origin_timestamp: PtpTimestamp


@dataclass(frozen=True)
class DelayRespMessage:
    header: PtpHeader
    receive_timestamp: PtpTimestamp
    requesting_port_identity: PortIdentity


@dataclass(frozen=True)
class PDelayReqMessage:
    header: PtpHeader
    origin_timestamp: PtpTimestamp


@dataclass(frozen=True)
class PDelayRespMessage:
    header: PtpHeader
    request_receipt_timestamp: PtpTimestamp
    requesting_port_identity: PortIdentity


@dataclass(frozen=True)
class PDelayRespFollowUpMessage:
    header: PtpHeader
    response_origin_timestamp: PtpTimestamp
    requesting_port_identity: PortIdentity


@dataclass(frozen=True)
class SignalingMessage:
    header: PtpHeader
    body: bytes


@dataclass(frozen=True)
class ManagementMessage:
    header: PtpHeader
    body: bytes


PtpMessage = Union[
    AnnounceMessage,
    SyncMessage,
    FollowUpMessage,
    DelayReqMessage,
    DelayRespMessage,
    PDelayReqMessage,
    PDelayRespMessage,
    PDelayRespFollowUpMessage,
    SignalingMessage,
    ManagementMessage,
]


def parse_header(data: bytes) -> PtpHeader:
    """
    Decodes the common 34 octet PTP header.

    Args:
        data (bytes): The UDP payload.

    Returns:
        PtpHeader: The decoded header.

    Raises:
        PtpParseError: If the buffer is too short, is not PTP version 2 or
            carries an undefined message type.
    """
    if len(data) < HEADER_LENGTH:
        raise PtpParseError(f"buffer too short for PTP header: {len(data)} < {HEADER_LENGTH}")
    version = data[1] & 0x0F
    if version != PTP_VERSION:
        raise PtpParseError(f"unsupported PTP version {version}")
    try:
        message_type = MessageType(data[0] & 0x0F)
    except ValueError:
        raise PtpParseError(f"unknown message type 0x{data[0] & 0x0F:x}") from None

    return PtpHeader(
        message_type=message_type,
        major_sdo_id=(data[0] & 0xF0) >> 4,
        version=version,
        minor_version=(data[1] & 0xF0) >> 4,
        message_length=bigint(data[2:4]),
        domain_number=data[4],
        minor_sdo_id=data[5],
        flags=bigint(data[6:8]),
        correction_field=CorrectionField(bigint(data[8:16], signed=True)),
        source_port_identity=PortIdentity.from_bytes(data[20:30]),
        sequence_id=bigint(data[30:32]),
        control_field=data[32],
        log_message_interval=bigint(data[33:34], signed=True),
    )


def _require_length(data: bytes, message_type: MessageType) -> None:
    minimum = MIN_MESSAGE_LENGTH[message_type]
    if len(data) < minimum:
        raise PtpParseError(f"{message_type} needs at least {minimum} bytes, got {len(data)}")


def _timestamp_at(data: bytes, offset: int) -> PtpTimestamp:
    return PtpTimestamp.from_bytes(data[offset: offset + TIMESTAMP_LENGTH])


def _port_identity_at(data: bytes, offset: int) -> PortIdentity:
    return PortIdentity.from_bytes(data[offset: offset + PORT_IDENTITY_LENGTH])


def _parse_announce(header: PtpHeader, data: bytes) -> AnnounceMessage:
    # octet 46 is reserved
    return AnnounceMessage(
        header=header,
        origin_timestamp=_timestamp_at(data, 34),
        current_utc_offset=bigint(data[44:46], signed=True),
        priority1=data[47],
        clock_class=data[48],
        clock_accuracy=data[49],
        offset_scaled_log_variance=bigint(data[50:52]),
        priority2=data[52],
        grandmaster_identity=ClockIdentity(data[53:61]),
        steps_removed=bigint(data[61:63]),
        time_source=data[63],
    )


def _parse_sync(header: PtpHeader, data: bytes) -> SyncMessage:
    return SyncMessage(header, _timestamp_at(data, 34))


def _parse_follow_up(header: PtpHeader, data: bytes) -> FollowUpMessage:
    return FollowUpMessage(header, _timestamp_at(data, 34))


def _parse_delay_req(header: PtpHeader, data: bytes) -> DelayReqMessage:
    return DelayReqMessage(header, _timestamp_at(data, 34))


def _parse_delay_resp(header: PtpHeader, data: bytes) -> DelayRespMessage:
    return DelayRespMessage(header, _timestamp_at(data, 34), _port_identity_at(data, 44))


def _parse_pdelay_req(header: PtpHeader, data: bytes) -> PDelayReqMessage:
    # followed by 10 reserved octets
    return PDelayReqMessage(header, _timestamp_at(data, 34))


def _parse_pdelay_resp(header: PtpHeader, data: bytes) -> PDelayRespMessage:
    return PDelayRespMessage(header, _timestamp_at(data, 34), _port_identity_at(data, 44))


def _parse_pdelay_resp_follow_up(header: PtpHeader, data: bytes) -> PDelayRespFollowUpMessage:
    return PDelayRespFollowUpMessage(header, _timestamp_at(data, 34), _port_identity_at(data, 44))


def _parse_signaling(header: PtpHeader, data: bytes) -> SignalingMessage:
    return SignalingMessage(header, bytes(data[HEADER_LENGTH:]))


def _parse_management(header: PtpHeader, data: bytes) -> ManagementMessage:
    return ManagementMessage(header, bytes(data[HEADER_LENGTH:]))


_BODY_PARSERS = {
    MessageType.SYNC: _parse_sync,
    MessageType.DELAY_REQ: _parse_delay_req,
    MessageType.PDELAY_REQ: _parse_pdelay_req,
    MessageType.PDELAY_RESP: _parse_pdelay_resp,
    MessageType.FOLLOW_UP: _parse_follow_up,
    MessageType.DELAY_RESP: _parse_delay_resp,
    MessageType.PDELAY_RESP_FOLLOW_UP: _parse_pdelay_resp_follow_up,
    MessageType.ANNOUNCE: _parse_announce,
    MessageType.SIGNALING: _parse_signaling,
    MessageType.MANAGEMENT: _parse_management,
}


def parse_message(data: bytes) -> PtpMessage:
    """
    Decodes a UDP payload into one of the typed PTP messages.

    Args:
        data (bytes): The UDP payload.

    Returns:
        PtpMessage: The decoded message; its header is available as `.header`.

    Raises:
        PtpParseError: If the header is invalid or the body is shorter than
            the minimum for its message type.
    """
    data = bytes(data)
    header = parse_header(data)
    _require_length(data, header.message_type)
    return _BODY_PARSERS[header.message_type](header, data)


# --- Presentation helpers ---

CLOCK_CLASS_NAMES = {
    6: "Primary reference (locked)",
    7: "Primary reference (holdover)",
    13: "Application specific (locked)",
    14: "Application specific (holdover)",
    52: "Primary reference (degraded A)",
    58: "Application specific (degraded A)",
    187: "Primary reference (degraded B)",
    193: "Application specific (degraded B)",
    248: "Default",
    255: "Time receiver only",
}

CLOCK_ACCURACY_NAMES = {
    0x17: "1 ps",
    0x18: "2.5 ps",
    0x19: "10 ps",
    0x1A: "25 ps",
    0x1B: "100 ps",
    0x1C: "250 ps",
    0x1D: "1 ns",
    0x1E: "2.5 ns",
    0x1F: "10 ns",
    0x20: "25 ns",
    0x21: "100 ns",
    0x22: "250 ns",
    0x23: "1 us",
    0x24: "2.5 us",
    0x25: "10 us",
    0x26: "25 us",
    0x27: "100 us",
    0x28: "250 us",
    0x29: "1 ms",
    0x2A: "2.5 ms",
    0x2B: "10 ms",
    0x2C: "25 ms",
    0x2D: "100 ms",
    0x2E: "250 ms",
    0x2F: "1 s",
    0x30: "10 s",
    0x31: "> 10 s",
    0xFE: "Unknown",
}

TIME_SOURCE_NAMES = {
    0x10: "Atomic clock",
    0x20: "GNSS",
    0x30: "Terrestrial radio",
    0x39: "Serial time code",
    0x40: "PTP",
    0x50: "NTP",
    0x60: "Hand set",
    0x90: "Other",
    0xA0: "Internal oscillator",
}


def clock_class_name(value: int) -> str:
    if value in CLOCK_CLASS_NAMES:
        return CLOCK_CLASS_NAMES[value]
    if 68 <= value <= 122 or 133 <= value <= 170 or 216 <= value <= 232:
        return "Alternate profile"
    return "Reserved"


def clock_accuracy_name(value: int) -> str:
    if value in CLOCK_ACCURACY_NAMES:
        return CLOCK_ACCURACY_NAMES[value]
    if 0x80 <= value <= 0xFD:
        return "Profile specific"
    return "Reserved"


def time_source_name(value: int) -> str:
    if value in TIME_SOURCE_NAMES:
        return TIME_SOURCE_NAMES[value]
    if 0xF0 <= value <= 0xFE:
        return "Profile specific"
    return "Reserved"


def flag_names(flags: int) -> List[str]:
    return [flag.name for flag in PtpFlags if flags & flag]


def log_interval_text(value: int) -> str:
    """
    Renders a logMessageInterval: 2**value seconds between messages.
    Negative exponents read better as a message rate.
    """
    if value == LOG_INTERVAL_UNICAST:
        return "unicast"
    if value >= 0:
        return f"{2 ** value}s"
    return f"{2 ** -value}/s"


def ptp_to_utc(timestamp: PtpTimestamp, utc_offset: int = 0) -> Optional[datetime]:
    """
    Converts a PTP (TAI) timestamp to a UTC datetime.

    Args:
        timestamp (PtpTimestamp): Seconds and nanoseconds since the PTP epoch.
        utc_offset (int): currentUtcOffset from Announce (TAI - UTC, seconds).

    Returns:
        datetime: Timezone aware UTC time, or None if out of range.
    """
    try:
        return datetime.fromtimestamp(timestamp.seconds - utc_offset, tz=timezone.utc) + timedelta(
            microseconds=timestamp.nanoseconds // 1000
        )
    except (OverflowError, OSError, ValueError):
        return None
