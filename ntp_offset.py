# ntp_offset.py - reply validation, round-trip delay, clock offset, corrected time
from datetime import datetime, timedelta, timezone
from ntp_packet import (EPOCH, PKT_SIZE, LeapIndicator, Mode, MalformedPacket, ClockNotSynchronized,
                        InvalidVersion, UnexpectedMode, ClockDisparityTooLarge, InvalidTransmitTimestamp)

MAX_YEARS=34; DAYS_PER_YEAR=365                 # no leap days
MAX_DISPARITY=timedelta(days=MAX_YEARS*DAYS_PER_YEAR)
MS=timedelta(milliseconds=1)

def utcnow(): return datetime.now(timezone.utc)

def validate(f):
    """Reject replies that can't be used for synchronization.

    Stratum 0 (kiss-of-death) passes: its reference id carries a status code the
    caller may want to show or act on.
    """
    if f.length<PKT_SIZE:
        raise MalformedPacket(f"NTP packet header is missing data: expected {PKT_SIZE} octets, received {f.length}")
    if f.leap_indicator==LeapIndicator.ALARM_NO_SYNC:
        raise ClockNotSynchronized(f"invalid response from server <{f.reference_identifier}>: "
                                   f"reference clock never synchronized [LI = {f.leap_indicator.name}]")
    if f.version_number==0:
        raise InvalidVersion(f"invalid response from server <{f.reference_identifier}>: (S)NTP version number is 0")
    if f.mode not in (Mode.SERVER,Mode.BROADCAST):
        raise UnexpectedMode(f"invalid response from server <{f.reference_identifier}>: protocol mode {f.mode.name}")

def reply_times(f, t4):
    return f.originate_timestamp, f.receive_timestamp, f.transmit_timestamp, t4

def round_trip_delay(t1, t2, t3, t4):
    # d = (T4 - T1) - (T3 - T2), not clamped
    return ((t4-t1)-(t3-t2))/MS

def system_clock_offset(t1, t2, t3, t4):
    if abs(t2-t1)>MAX_DISPARITY: raise ClockDisparityTooLarge("receive",t1,t2,MAX_YEARS)
    if abs(t3-t4)>MAX_DISPARITY: raise ClockDisparityTooLarge("transmit",t4,t3,MAX_YEARS)
    if abs(t3-EPOCH)<timedelta(seconds=1):
        raise InvalidTransmitTimestamp("invalid response from server: transmit timestamp field is 0 [T3 = 0]")
    return ((t2-t1)+(t3-t4))/MS/2.0           # t = ((T2 - T1) + (T3 - T4)) / 2

def corrected_clock(offset_ms, now=None):
    now=now or utcnow()
    return now+timedelta(microseconds=int(offset_ms*1000))

def corrected_clock_from_transmit(t3, t4, delay_ms, now=None):
    # server transmit time + one-way trip + time spent here since T4
    now=now or utcnow()
    return t3+timedelta(microseconds=int(delay_ms/2.0*1000))+(now-t4)
