# ntp_packet.py - 48-byte RFC 4330 header: request builder, field decoding, timestamps
import socket, struct, threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import IntEnum

PKT_SIZE=48
EPOCH=datetime(1900,1,1,tzinfo=timezone.utc)   # NTP era 0
DNS_TIMEOUT=0.25                               # seconds, reverse lookup bound
REQUEST_OCTET0=0b00_100_011                    # LI=0 VN=4 Mode=3

# field offsets within the header
ROOT_DELAY=4; ROOT_DISPERSION=8; REFERENCE_ID=12
REFERENCE_TS=16; ORIGINATE_TS=24; RECEIVE_TS=32; TRANSMIT_TS=40


class SntpError(Exception):
    pass

class MalformedPacket(SntpError, ValueError):
    pass

class UnknownEnumValue(SntpError, ValueError):
    def __init__(self, field, value):
        super().__init__(f"unknown {field} value: {value}")
        self.field=field; self.value=value

class ProtocolError(SntpError):
    pass

class ClockNotSynchronized(ProtocolError):
    pass

class InvalidVersion(ProtocolError):
    pass

class UnexpectedMode(ProtocolError):
    pass

class InvalidTransmitTimestamp(ProtocolError):
    pass

class ClockDisparityTooLarge(ProtocolError):
    def __init__(self, leg, client, server, years):
        super().__init__(f"time disparity between client and server is greater than {years} years "
                         f"({leg}: client {client:%Y-%m-%d %H:%M:%SZ}, server {server:%Y-%m-%d %H:%M:%SZ})")
        self.leg=leg; self.client=client; self.server=server


class LeapIndicator(IntEnum):
    NO_WARNING=0
    LAST_MINUTE_61=1
    LAST_MINUTE_59=2
    ALARM_NO_SYNC=3

class Mode(IntEnum):
    RESERVED=0
    SYMMETRIC_ACTIVE=1
    SYMMETRIC_PASSIVE=2
    CLIENT=3
    SERVER=4
    BROADCAST=5

class Stratum(IntEnum):
    KISS_OF_DEATH=0
    PRIMARY=1
    SECONDARY=2
    RESERVED=3


def leap_indicator_of(octet):
    val=(octet&0b11_000000)>>6
    if val>3: raise UnknownEnumValue("leap indicator",val)
    return LeapIndicator(val)

def version_of(octet): return (octet&0b00_111_000)>>3

def mode_of(octet):
    val=octet&0b00000_111
    if val in (6,7): return Mode.RESERVED   # control message / private use
    if not 0<=val<=5: raise UnknownEnumValue("mode",val)
    return Mode(val)

def classify_stratum(value):
    if value==0: return Stratum.KISS_OF_DEATH
    if value==1: return Stratum.PRIMARY
    if 2<=value<=15: return Stratum.SECONDARY
    if 16<=value<=255: return Stratum.RESERVED
    raise UnknownEnumValue("stratum",value)


def encode_timestamp(instant):
    """Instant -> 8 bytes (uint32 seconds, fraction) since EPOCH.

    Each fraction octet is scaled and masked on its own instead of splitting a
    single 32-bit fraction, so the low bits carry float rounding noise.
    """
    delta=max(0.0,(instant-EPOCH).total_seconds())
    secs=int(delta); frac=delta-secs
    out=bytearray(struct.pack("!I",secs&0xFFFFFFFF))
    for scale in (2**8,2**16,2**24,2**32):
        out.append(int(frac*scale)&0xFF)
    return bytes(out)

def decode_timestamp(data, offset):
    """8 bytes at offset -> UTC datetime.

    The sum is done in double precision. That loses a few microseconds' worth of
    accuracy next to decimal arithmetic at current-era magnitudes, but keeps
    decoding cheap.
    """
    b=data[offset:offset+8]
    delta=float(struct.unpack("!I",b[:4])[0])
    delta+=b[4]/256.0+b[5]/65536.0+b[6]/16777216.0+b[7]/4294967296.0
    return EPOCH+timedelta(microseconds=round(delta*1e6))

def build_request(now):
    buf=bytearray(PKT_SIZE); buf[0]=REQUEST_OCTET0
    buf[TRANSMIT_TS:TRANSMIT_TS+8]=encode_timestamp(now)
    return bytes(buf)


def reverse_lookup(ip, timeout=DNS_TIMEOUT):
    # gethostbyaddr has no timeout of its own; a stuck resolver is left behind on a daemon thread
    box=[]
    def work():
        try: box.append(socket.gethostbyaddr(ip)[0])
        except OSError: pass
    t=threading.Thread(target=work,daemon=True); t.start(); t.join(timeout)
    return box[0] if box else None

def _fixed16(data, offset):
    # 16.16 unsigned fixed point seconds -> ms
    return struct.unpack("!I",data[offset:offset+4])[0]/65536.0*1e3

def reference_id(data, stratum, ip_version=4, lookup=reverse_lookup):
    raw=data[REFERENCE_ID:REFERENCE_ID+4]
    if stratum in (Stratum.KISS_OF_DEATH,Stratum.PRIMARY):
        return "".join(chr(c) for c in raw)
    if stratum==Stratum.SECONDARY:
        if ip_version==4:
            ip=".".join(str(c) for c in raw)
            host=lookup(ip,DNS_TIMEOUT) if lookup else None
            return f"{host} ({ip})" if host else ip
        if ip_version==6:
            return "0x"+raw.hex().upper()   # first 32 bits of the source address hash
        return "N/A"
    if stratum==Stratum.RESERVED: return "N/A"
    raise UnknownEnumValue("stratum",stratum)


@dataclass(frozen=True)
class DecodedFields:
    length: int
    leap_indicator: LeapIndicator
    version_number: int
    mode: Mode
    stratum: int
    stratum_kind: Stratum
    poll_exponent: int
    poll_seconds: int
    precision_exponent: int
    precision_ns: float
    root_delay_ms: float
    root_dispersion_ms: float
    reference_identifier: str
    reference_timestamp: datetime
    originate_timestamp: datetime
    receive_timestamp: datetime
    transmit_timestamp: datetime

def decode_header(data, ip_version=4, lookup=reverse_lookup):
    if len(data)<PKT_SIZE:
        raise MalformedPacket(f"NTP packet header is missing data: expected {PKT_SIZE} octets, received {len(data)}")
    kind=classify_stratum(data[1])
    precision=struct.unpack("!b",data[3:4])[0]
    return DecodedFields(
        length=len(data),
        leap_indicator=leap_indicator_of(data[0]),
        version_number=version_of(data[0]),
        mode=mode_of(data[0]),
        stratum=data[1], stratum_kind=kind,
        poll_exponent=data[2], poll_seconds=2**data[2],
        precision_exponent=precision, precision_ns=2.0**precision*1e9,
        root_delay_ms=_fixed16(data,ROOT_DELAY),
        root_dispersion_ms=_fixed16(data,ROOT_DISPERSION),
        reference_identifier=reference_id(data,kind,ip_version,lookup),
        reference_timestamp=decode_timestamp(data,REFERENCE_TS),
        originate_timestamp=decode_timestamp(data,ORIGINATE_TS),
        receive_timestamp=decode_timestamp(data,RECEIVE_TS),
        transmit_timestamp=decode_timestamp(data,TRANSMIT_TS))
