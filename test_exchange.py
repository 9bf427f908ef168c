# test_exchange.py - client against the loopback responder; run: pytest
import socket
from datetime import datetime,timedelta,timezone
import pytest
from ntp_packet import EPOCH,Mode,Stratum,build_request,decode_header,UnexpectedMode
from ntp_offset import utcnow
from sntp_server import Responder,make_reply
import sntp_client as cl

@pytest.fixture
def server():
    with Responder(skew=2.0,quiet=True) as srv: yield srv

def test_exchange_round_trip(server):
    addr,version=cl.resolve("127.0.0.1",server.address[1])
    assert (addr,version)==("127.0.0.1",4)
    data,t4=cl.exchange(addr,version,server.address[1],timeout=2)
    f=decode_header(data,version,lookup=None)
    assert f.mode==Mode.SERVER and f.stratum_kind==Stratum.SECONDARY
    assert f.originate_timestamp<=t4

def test_sync_query_only(server):
    rep=cl.sync("127.0.0.1",server.address[1],update=False,timeout=2,lookup=None)
    assert rep.offset_ms==pytest.approx(2000,abs=100)
    assert -1<=rep.delay_ms<500
    assert rep.fields.reference_identifier=="127.0.0.1"
    assert not rep.updated and rep.note==""

def test_sync_sets_clock(server):
    got=[]
    rep=cl.sync("127.0.0.1",server.address[1],timeout=2,lookup=None,setter=got.append)
    assert rep.updated and len(got)==1
    assert (got[0]-utcnow()).total_seconds()==pytest.approx(2.0,abs=0.2)

def test_sync_within_threshold():
    got=[]
    with Responder(quiet=True) as srv:
        rep=cl.sync("127.0.0.1",srv.address[1],timeout=2,lookup=None,setter=got.append)
    assert not rep.updated and got==[]
    assert "50 ms threshold" in rep.note

def test_sync_setter_failure(server):
    def deny(instant): raise PermissionError(1,"Operation not permitted")
    rep=cl.sync("127.0.0.1",server.address[1],timeout=2,lookup=None,setter=deny)
    assert not rep.updated and "not permitted" in rep.note

def test_sync_kiss_of_death():
    with Responder(quiet=True,stratum=0,refid=b"RATE") as srv:
        rep=cl.sync("127.0.0.1",srv.address[1],update=False,timeout=2,lookup=None)
    assert rep.fields.stratum_kind==Stratum.KISS_OF_DEATH
    assert rep.fields.reference_identifier=="RATE"

def test_sync_rejects_mode():
    with Responder(quiet=True,mode=Mode.SYMMETRIC_ACTIVE) as srv:
        with pytest.raises(UnexpectedMode):
            cl.sync("127.0.0.1",srv.address[1],update=False,timeout=2,lookup=None)

def test_responder_ignores_non_client(server):
    req=bytearray(build_request(utcnow())); req[0]=0b00_100_001
    with socket.socket(socket.AF_INET,socket.SOCK_DGRAM) as s:
        s.settimeout(0.3); s.sendto(bytes(req),server.address)
        with pytest.raises(socket.timeout): s.recvfrom(1024)
    assert server.served==0

def test_make_reply_echoes_transmit():
    t=datetime(2024,1,2,3,4,5,678901,tzinfo=timezone.utc)
    req=build_request(t)
    rep=make_reply(req,t,t)
    assert rep[24:32]==req[40:48]

def test_check_system_clock():
    cl.check_system_clock(utcnow())
    with pytest.raises(cl.SystemClockOutOfRange): cl.check_system_clock(EPOCH-timedelta(days=1))
    with pytest.raises(cl.SystemClockOutOfRange): cl.check_system_clock(EPOCH+timedelta(seconds=2**32))

def test_format_report():
    f=decode_header(make_reply(build_request(utcnow()),utcnow(),utcnow(),precision=-24),lookup=None)
    rep=cl.Report("time.example","127.0.0.1",f,utcnow(),-66.16,351.26)
    out=cl.format_report(rep)
    assert " Stratum: 2 (secondary reference - synchronized by NTP or SNTP)" in out
    assert " Round Trip Delay: 351.26 ms" in out
    assert " System Clock Offset: -66.16 ms" in out
    assert " Poll Interval: 3 (8 s)" in out
    assert out.endswith("SYSTEM TIME NOT UPDATED")
    rep.offset_ms=123456.7; rep.updated=True
    out=cl.format_report(rep)
    assert " System Clock Offset: 1.2346e+05 ms" in out
    assert out.endswith("SYSTEM TIME UPDATED")

def test_main_query(server,capsys):
    assert cl.main(["-q","--port",str(server.address[1]),"--timeout","2","127.0.0.1"])==0
    out=capsys.readouterr().out
    assert "Connecting to 127.0.0.1..." in out
    assert "System Clock Offset:" in out
    assert "SYSTEM TIME NOT UPDATED" in out

def test_main_no_reply(capsys):
    with socket.socket(socket.AF_INET,socket.SOCK_DGRAM) as silent:
        silent.bind(("127.0.0.1",0))
        port=silent.getsockname()[1]
        assert cl.main(["-q","--port",str(port),"--timeout","0.2","127.0.0.1"])==1
    assert "Error:" in capsys.readouterr().out

def test_main_bad_server():
    with pytest.raises(SystemExit) as e: cl.main(["-q","ab"])
    assert e.value.code==2
