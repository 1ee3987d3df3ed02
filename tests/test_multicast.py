import json
import queue
import socket
import time

from mibridge.config.schema import BridgeConfig, MQTTConfig, MulticastConfig
from mibridge.core.bridge import Bridge
from mibridge.transports.multicast import MulticastReceiver


class FakeSocket:
    """Feeds queued datagrams; an Exception instance in the queue is raised once."""

    def __init__(self, inbox):
        self.inbox = inbox
        self.closed = False

    def recvfrom(self, bufsize):
        if self.closed:
            raise OSError(9, "Bad file descriptor")
        try:
            item = self.inbox.get(timeout=0.05)
        except queue.Empty:
            raise socket.timeout()
        if isinstance(item, Exception):
            raise item
        return item[:bufsize], ("192.168.1.50", 4321)

    def close(self):
        self.closed = True


class FakeReceiver(MulticastReceiver):
    def __init__(self, cfg=None, join_error=None, on_datagram=None):
        super().__init__("test", cfg or MulticastConfig(), on_datagram)
        self.inbox = queue.Queue()
        self.join_error = join_error
        self.opened = 0
        self.joined = []

    def _open_socket(self):
        self.opened += 1
        return FakeSocket(self.inbox)

    def _join_group(self, sock, ifindex):
        if self.join_error:
            raise self.join_error
        self.joined.append((self.cfg.group, ifindex))


def collector():
    got = []

    def on_datagram(text):
        got.append(text)

    return got, on_datagram


def wait_for(cond, timeout=2.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if cond():
            return True
        time.sleep(0.01)
    return cond()


def test_datagrams_delivered_in_order():
    got, cb = collector()
    rx = FakeReceiver(on_datagram=cb)
    rx.start()
    try:
        for i in range(3):
            rx.inbox.put(f'{{"n": {i}}}'.encode())
        assert wait_for(lambda: len(got) == 3)
    finally:
        rx.stop()
    assert got == ['{"n": 0}', '{"n": 1}', '{"n": 2}']
    assert rx.joined == [("224.0.0.50", None)]


def test_datagram_is_truncated_to_buffer_size():
    got, cb = collector()
    rx = FakeReceiver(cfg=MulticastConfig(buffer_size=4), on_datagram=cb)
    rx.start()
    try:
        rx.inbox.put(b"abcdefgh")
        assert wait_for(lambda: len(got) == 1)
    finally:
        rx.stop()
    assert got == ["abcd"]


def test_invalid_utf8_is_replaced():
    got, cb = collector()
    rx = FakeReceiver(on_datagram=cb)
    rx.start()
    try:
        rx.inbox.put(b"\xff\xfeok")
        assert wait_for(lambda: len(got) == 1)
    finally:
        rx.stop()
    assert got[0].endswith("ok")


def test_read_error_does_not_stop_loop():
    got, cb = collector()
    rx = FakeReceiver(on_datagram=cb)
    rx.start()
    try:
        rx.inbox.put(OSError(104, "Connection reset"))
        rx.inbox.put(b"after")
        assert wait_for(lambda: got == ["after"])
    finally:
        rx.stop()
    assert rx.opened == 2


def test_join_failure_keeps_receiving():
    got, cb = collector()
    rx = FakeReceiver(join_error=OSError(19, "No such device"), on_datagram=cb)
    rx.start()
    try:
        rx.inbox.put(b"still here")
        assert wait_for(lambda: got == ["still here"])
    finally:
        rx.stop()


def test_handler_error_does_not_stop_loop():
    got = []

    def on_datagram(text):
        if text == "boom":
            raise RuntimeError("handler failed")
        got.append(text)

    rx = FakeReceiver(on_datagram=on_datagram)
    rx.start()
    try:
        rx.inbox.put(b"boom")
        rx.inbox.put(b"next")
        assert wait_for(lambda: got == ["next"])
    finally:
        rx.stop()


def test_unknown_interface_falls_back_to_default():
    rx = MulticastReceiver("test", MulticastConfig(interface="mibr-nope0"))
    assert rx.resolve_interface() is None
    assert MulticastReceiver("test", MulticastConfig()).resolve_interface() is None


def test_stop_joins_thread():
    rx = FakeReceiver(on_datagram=lambda text: None)
    rx.start()
    thr = rx._threads[0]
    rx.stop()
    assert not thr.is_alive()


class DummyRouter:
    def __init__(self):
        self.publishes = []

    def start(self):
        pass

    def stop(self):
        pass

    def publish(self, topic, payload, qos=0, retain=False):
        self.publishes.append((topic, payload))
        return True


def test_malformed_datagram_does_not_stop_pipeline():
    router = DummyRouter()
    rx = FakeReceiver()
    bridge = Bridge(BridgeConfig(mqtt=MQTTConfig(retry_delay=0.01)), {"gateway": rx}, router)
    rx.on_datagram = bridge.on_datagram
    bridge.start()
    try:
        rx.inbox.put(b"{definitely not json")
        rx.inbox.put(json.dumps({"model": "magnet", "sid": "a1", "data": json.dumps({"status": "open"})}).encode())
        rx.inbox.put(json.dumps({"model": "switch", "sid": "b2", "data": json.dumps({"status": "click"})}).encode())
        assert wait_for(lambda: len(router.publishes) == 3)
    finally:
        bridge.stop()
    assert router.publishes == [
        ("/mibridge//", ""),
        ("/mibridge/magnet/a1/status", "open"),
        ("/mibridge/switch/b2/status", "click"),
    ]
