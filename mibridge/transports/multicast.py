import socket
import struct
import sys
import threading
import time
import logging
from typing import Callable, Optional

from mibridge.config.schema import MulticastConfig
from mibridge.core.constants import MULTICAST_BIND


class MulticastReceiver:
    """
    Gateway multicast listener with a supervised open/join and a receive thread.
    Every datagram is decoded to text and handed to ``on_datagram`` on the
    receive thread, so the callback finishes before the next read.
    """

    def __init__(self, name: str, cfg: MulticastConfig, on_datagram: Optional[Callable[[str], None]] = None):
        self.name = name
        self.cfg = cfg
        self.on_datagram = on_datagram   # callable(text) -> None
        self._sock = None
        self._ifindex: Optional[int] = None
        self._sock_lock = threading.Lock()
        self._run = False
        self._threads = []

    # ---- socket setup (overridden in tests) ----
    def _open_socket(self):
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if hasattr(socket, "SO_REUSEPORT"):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        sock.bind((MULTICAST_BIND, self.cfg.port))
        # short timeout so the loop notices stop()
        sock.settimeout(0.5)
        return sock

    def _join_group(self, sock, ifindex: Optional[int]):
        group = socket.inet_aton(self.cfg.group)
        any_addr = socket.inet_aton(MULTICAST_BIND)
        if ifindex is not None and sys.platform.startswith("linux"):
            # struct ip_mreqn: group, local address, interface index
            mreq = group + any_addr + struct.pack("@i", ifindex)
        else:
            mreq = group + any_addr
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)

    def resolve_interface(self) -> Optional[int]:
        if not self.cfg.interface:
            return None
        try:
            return socket.if_nametoindex(self.cfg.interface)
        except OSError:
            logging.warning(f"[multicast:{self.name}] invalid interface name {self.cfg.interface!r}, trying anyway on default interface")
            return None

    # ---- lifecycle ----
    def start(self):
        self._ifindex = self.resolve_interface()
        self._run = True
        t = threading.Thread(target=self._rx_loop, name=f"multicast-{self.name}", daemon=False)
        t.start()
        self._threads.append(t)

    def stop(self):
        self._run = False
        self._close()
        for thr in self._threads:
            thr.join(timeout=2.0)
        self._threads = []

    def _close(self):
        with self._sock_lock:
            if self._sock is not None:
                try:
                    self._sock.close()
                except OSError:
                    pass
            self._sock = None

    # ---- loops ----
    def _connect(self):
        sock = self._open_socket()
        logging.info(f"[multicast:{self.name}] listening on {MULTICAST_BIND}:{self.cfg.port}")
        try:
            self._join_group(sock, self._ifindex)
        except OSError as e:
            # keep reading; the group may still be delivered by the host
            logging.warning(f"[multicast:{self.name}] join {self.cfg.group} failed: {e}")
        else:
            logging.info(f"[multicast:{self.name}] joined multicast group {self.cfg.group} interface={self.cfg.interface or 'default'}")
        with self._sock_lock:
            self._sock = sock
        return sock

    def _rx_loop(self):
        sock = None
        while self._run:
            if sock is None:
                try:
                    sock = self._connect()
                except OSError as e:
                    logging.warning(f"[multicast:{self.name}] open failed: {e}; retry in 1s")
                    time.sleep(1.0)
                    continue
            try:
                data, addr = sock.recvfrom(self.cfg.buffer_size)
            except socket.timeout:
                continue
            except OSError as e:
                if not self._run:
                    break
                logging.warning(f"[multicast:{self.name}] read error: {e}; reopening socket")
                self._close()
                sock = None
                time.sleep(0.1)
                continue
            if not self.on_datagram:
                continue
            text = data.decode("utf-8", errors="replace")
            try:
                self.on_datagram(text)
            except Exception:
                logging.exception(f"[multicast:{self.name}] datagram handler failed for datagram from {addr}")
        self._close()
