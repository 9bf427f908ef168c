# sntp_server.py - loopback SNTP responder: answers mode 3 requests with mode 4 replies
import argparse,socket,struct,threading
from datetime import timedelta
from ntp_packet import (PKT_SIZE,ROOT_DELAY,REFERENCE_ID,REFERENCE_TS,ORIGINATE_TS,RECEIVE_TS,TRANSMIT_TS,
                        Mode,MalformedPacket,mode_of,encode_timestamp)
from ntp_offset import utcnow

def make_reply(req,t2,t3,stratum=2,poll=3,precision=-20,refid=bytes([127,0,0,1]),
               root_delay=0,root_dispersion=0,li=0,vn=4,mode=Mode.SERVER):
    """Reply header for request bytes `req`; T1 is echoed from the request's transmit field."""
    if len(req)<PKT_SIZE: raise MalformedPacket(f"bad size {len(req)}")
    buf=bytearray(PKT_SIZE)
    buf[0]=(li<<6)|(vn<<3)|mode
    buf[1]=stratum; buf[2]=poll; buf[3]=precision&0xFF
    buf[ROOT_DELAY:ROOT_DELAY+8]=struct.pack("!II",root_delay,root_dispersion)
    buf[REFERENCE_ID:REFERENCE_ID+4]=refid
    buf[REFERENCE_TS:REFERENCE_TS+8]=encode_timestamp(t3)
    buf[ORIGINATE_TS:ORIGINATE_TS+8]=req[TRANSMIT_TS:TRANSMIT_TS+8]
    buf[RECEIVE_TS:RECEIVE_TS+8]=encode_timestamp(t2)
    buf[TRANSMIT_TS:TRANSMIT_TS+8]=encode_timestamp(t3)
    return bytes(buf)

class Responder:
    def __init__(self,host="127.0.0.1",port=0,skew=0.0,quiet=False,**fields):
        self.skew=timedelta(seconds=skew); self.quiet=quiet; self.fields=fields
        self.sock=socket.socket(socket.AF_INET,socket.SOCK_DGRAM)   # socket()
        self.sock.bind((host,port))                                 # bind()
        self.sock.settimeout(0.2)                                   # wake up to check running
        self.address=self.sock.getsockname(); self.served=0
        self.lock=threading.Lock(); self.running=False

    def now(self): return utcnow()+self.skew

    def handle(self,data,addr,t2):
        if len(data)<PKT_SIZE or mode_of(data[0])!=Mode.CLIENT: return
        rep=make_reply(data,t2,self.now(),**self.fields)
        try: self.sock.sendto(rep,addr)                             # sendto()
        except OSError: return                                      # closed by stop()
        with self.lock: self.served+=1
        if not self.quiet: print(f"{addr[0]}:{addr[1]} served")

    def loop(self):
        while self.running:
            try: data,addr=self.sock.recvfrom(1024)                 # recvfrom()
            except socket.timeout: continue
            except OSError: break
            t2=self.now()
            threading.Thread(target=self.handle,args=(data,addr,t2),daemon=True).start()

    def start(self):
        self.running=True
        threading.Thread(target=self.loop,daemon=True).start()
        return self

    def stop(self):
        self.running=False; self.sock.close()

    def __enter__(self): return self.start()
    def __exit__(self,*exc): self.stop()

def main():
    ap=argparse.ArgumentParser(description="Answer SNTP requests from the local clock.")
    ap.add_argument("--host",default="127.0.0.1")
    ap.add_argument("--port",type=int,default=12300)
    ap.add_argument("--skew",type=float,default=0.0,help="seconds added to the local clock")
    ap.add_argument("--stratum",type=int,default=2)
    args=ap.parse_args()
    srv=Responder(args.host,args.port,args.skew,stratum=args.stratum).start()
    print(f"UDP ready {srv.address[0]}:{srv.address[1]} skew={args.skew:+.3f}s")
    try: threading.Event().wait()
    except KeyboardInterrupt: print("stopped")
    finally: srv.stop()

if __name__=="__main__": main()
