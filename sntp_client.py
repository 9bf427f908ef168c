# sntp_client.py - query a time server, report offset/delay, optionally set the system clock
import argparse,ctypes,socket,sys,time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from ntp_packet import (EPOCH,SntpError,DecodedFields,Stratum,LeapIndicator,
                        build_request,decode_header,reverse_lookup)
from ntp_offset import (validate,reply_times,round_trip_delay,system_clock_offset,corrected_clock,utcnow)

NTP_PORT=123; UDP_TIMEOUT=5.0               # seconds
UPDATE_THRESHOLD=50                         # ms, smaller offsets leave the clock alone
DEFAULT_SERVER="pool.ntp.org"
MAX_SECONDS=0xFFFFFFFF                      # uint32 seconds field

class SystemClockOutOfRange(SntpError):
    pass

@dataclass
class Report:
    server: str
    address: str
    fields: DecodedFields
    destination: datetime
    offset_ms: float
    delay_ms: float
    updated: bool=False
    note: str=""

def check_system_clock(now):
    if now<EPOCH:
        raise SystemClockOutOfRange(f"dates before the NTP epoch (1900-01-01 00:00:00 UTC) are invalid: {now}")
    if (now-EPOCH).total_seconds()>MAX_SECONDS:
        raise SystemClockOutOfRange(f"seconds field overflow (max = {MAX_SECONDS}): {now}")

def resolve(host,port=NTP_PORT):
    """Host name or IP literal -> (address, ip version); names take the first resolver answer."""
    fam,_,_,_,sa=socket.getaddrinfo(host,port,0,socket.SOCK_DGRAM)[0]
    if fam==socket.AF_INET: return sa[0],4
    if fam==socket.AF_INET6: return sa[0],6
    raise SntpError(f"unknown address family for {host}: {fam}")

def exchange(address,version,port=NTP_PORT,timeout=UDP_TIMEOUT):
    fam=socket.AF_INET if version==4 else socket.AF_INET6
    with socket.socket(fam,socket.SOCK_DGRAM) as sock:        # socket()
        sock.settimeout(timeout); sock.connect((address,port))
        sock.send(build_request(utcnow()))                     # send()
        data=sock.recv(1024)                                   # recv()
        t4=utcnow()
    return data,t4

class SYSTEMTIME(ctypes.Structure):
    _fields_=[(n,ctypes.c_ushort) for n in
              ("wYear","wMonth","wDayOfWeek","wDay","wHour","wMinute","wSecond","wMilliseconds")]

def set_system_clock(instant):
    if hasattr(time,"clock_settime"):
        time.clock_settime(time.CLOCK_REALTIME,instant.timestamp()); return
    if sys.platform=="win32":
        u=(instant+timedelta(microseconds=500)).astimezone(timezone.utc)   # ms rounding
        st=SYSTEMTIME(u.year,u.month,u.isoweekday()%7,u.day,u.hour,u.minute,u.second,u.microsecond//1000)
        k32=ctypes.WinDLL("kernel32",use_last_error=True)
        if not k32.SetSystemTime(ctypes.byref(st)): raise ctypes.WinError(ctypes.get_last_error())
        return
    raise OSError(f"setting the system clock is not supported on {sys.platform}")

def sync(server=DEFAULT_SERVER,port=NTP_PORT,update=True,timeout=UDP_TIMEOUT,lookup=reverse_lookup,
         setter=set_system_clock):
    check_system_clock(utcnow())
    address,version=resolve(server,port)
    data,t4=exchange(address,version,port,timeout)
    f=decode_header(data,version,lookup); validate(f)
    t1,t2,t3,t4=reply_times(f,t4)
    off=system_clock_offset(t1,t2,t3,t4)   # sanity checks first, delay has none of its own
    rep=Report(server,address,f,t4,off,round_trip_delay(t1,t2,t3,t4))
    if not update: return rep
    if abs(off)<=UPDATE_THRESHOLD:
        rep.note=f"System clock offset within {UPDATE_THRESHOLD} ms threshold"; return rep
    try: setter(corrected_clock(off)); rep.updated=True
    except OSError as e: rep.note=str(e)
    return rep

LEAP_TEXT={LeapIndicator.NO_WARNING:"no warning",LeapIndicator.LAST_MINUTE_61:"last minute has 61 seconds",
           LeapIndicator.LAST_MINUTE_59:"last minute has 59 seconds",
           LeapIndicator.ALARM_NO_SYNC:"alarm condition - clock not synchronized"}
STRATUM_TEXT={Stratum.KISS_OF_DEATH:"kiss-o'-death message",
              Stratum.PRIMARY:"primary reference - synchronized by reference clock",
              Stratum.SECONDARY:"secondary reference - synchronized by NTP or SNTP",Stratum.RESERVED:"reserved"}

def ms(v,limit): return f"{v:.2f} ms" if abs(v)<limit else f"{v:.5g} ms"

def format_report(rep):
    f=rep.fields
    local=f.originate_timestamp.astimezone()
    lines=[f"Leap Indicator: {int(f.leap_indicator)} ({LEAP_TEXT[f.leap_indicator]})",
           f"NTP Version: {f.version_number}",
           f"Stratum: {f.stratum} ({STRATUM_TEXT[f.stratum_kind]})",
           f"Poll Interval: {f.poll_exponent} ({f.poll_seconds} s)",
           f"Precision: {f.precision_exponent} ({f.precision_ns:.5g} ns)",
           f"Root Delay: {f.root_delay_ms:.5g} ms",
           f"Root Dispersion: {f.root_dispersion_ms:.5g} ms",
           f"Reference ID: {f.reference_identifier}",
           f"Local Time: {local:%Y/%m/%d %H:%M:%S}.{local.microsecond//1000:03d}{local:%z}",
           f"Round Trip Delay: {ms(rep.delay_ms,1000)}",
           f"System Clock Offset: {ms(rep.offset_ms,1000)}",""]
    if rep.updated: lines.append("SYSTEM TIME UPDATED")
    elif rep.note: lines.append(f"SYSTEM TIME NOT UPDATED - {rep.note}")
    else: lines.append("SYSTEM TIME NOT UPDATED")
    return "\n".join(" "+l if l and not l.startswith("SYSTEM") else l for l in lines)

def main(argv=None):
    ap=argparse.ArgumentParser(description="Set the system date and time from a remote NTP time server.",
                               epilog=f"If SERVER is not specified, the default server '{DEFAULT_SERVER}' will be used.")
    ap.add_argument("server",nargs="?",default=DEFAULT_SERVER,metavar="SERVER",help="hostname or IP address")
    ap.add_argument("-q","--query",action="store_true",help="query only - do not set the clock")
    ap.add_argument("--port",type=int,default=NTP_PORT)
    ap.add_argument("--timeout",type=float,default=UDP_TIMEOUT,help="seconds to wait for the reply")
    args=ap.parse_args(argv)
    if len(args.server)<4 or not args.server[0].isalnum():
        ap.error(f"SERVER = {args.server}. SERVER must be a valid hostname or IP address.")
    print(f"Connecting to {args.server}...\n")
    try: rep=sync(args.server,args.port,update=not args.query,timeout=args.timeout)
    except socket.timeout: print(f"Error: no reply from {args.server} within {args.timeout}s"); return 1
    except (SntpError,OSError) as e: print(f"Error: {e}"); return 1
    print(format_report(rep))
    return 0

if __name__=="__main__": sys.exit(main())
