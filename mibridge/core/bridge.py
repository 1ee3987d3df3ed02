import time, threading, logging
from queue import Queue, Empty, Full

from mibridge.config.schema import BridgeConfig
from mibridge.core import decoder
from mibridge.core.message import OutboundMessage
from mibridge.routers.mqtt_router import InvalidTopicError

COUNTERS = ("datagrams", "decode_errors", "enqueued", "dropped", "published", "publish_errors")


class Bridge:
    def __init__(self, cfg: BridgeConfig, receivers: dict, mqtt_router):
        self.cfg = cfg
        self.receivers = receivers
        self.mqtt = mqtt_router
        self.root = cfg.mqtt.topic_prefix
        # decoded messages waiting for the publish loop (receivers -> MQTT)
        self.q = Queue(maxsize=cfg.queue.max_size)
        self._run = False
        # receivers may enqueue only while accepting; cleared first on stop()
        self._accepting = False
        # set when the drain timed out; publish loop gives up on the backlog
        self._abort = False
        self._threads = []
        self._stats_lock = threading.Lock()
        self._stats = dict.fromkeys(COUNTERS, 0)

    # --- lifecycle ---
    def start(self):
        # broker first so nothing is read before there is a consumer;
        # raises BrokerConnectError when the broker is unreachable
        self.mqtt.start()
        self._run = True
        self._accepting = True
        self._abort = False
        t = threading.Thread(target=self._proc_loop, name="bridge-publish", daemon=False)
        t.start()
        self._threads.append(t)
        for r in self.receivers.values():
            r.start()
        logging.info(f"[bridge] started receivers={list(self.receivers.keys())} root={self.root}")

    def stop(self):
        self._accepting = False
        for r in self.receivers.values():
            r.stop()
        # publish loop drains what is left, then exits
        self._run = False
        drain_timeout = self.cfg.queue.drain_timeout
        for thr in self._threads:
            thr.join(timeout=drain_timeout)
            if thr.is_alive():
                logging.warning(f"[bridge] drain not finished after {drain_timeout:.1f}s; abandoning {self.q.qsize()} queued messages")
                self._abort = True
                thr.join(timeout=2.0)
        self._threads = []
        self.mqtt.stop()
        logging.info(f"[bridge] stopped stats={self.stats()}")

    # --- called by receivers (on the receive thread) ---
    def on_datagram(self, text: str):
        self._count("datagrams")
        try:
            messages = decoder.decode(text, root=self.root)
        except decoder.DataDecodeError as e:
            self._count("decode_errors")
            logging.warning(f"[bridge] dropping datagram: {e}")
            return
        for msg in messages:
            self._enqueue(msg)

    def _enqueue(self, msg: OutboundMessage):
        if self.cfg.queue.overflow == "drop_oldest":
            while True:
                try:
                    self.q.put_nowait(msg)
                    break
                except Full:
                    if not self._accepting:
                        self._count("dropped")
                        logging.warning(f"[bridge] shutting down with full queue; dropped topic={msg.topic}")
                        return
                    try:
                        old = self.q.get_nowait()
                    except Empty:
                        continue
                    self._count("dropped")
                    logging.warning(f"[bridge] queue full ({self.q.maxsize}); dropped oldest topic={old.topic}")
        else:
            while True:
                try:
                    self.q.put(msg, timeout=0.2)
                    break
                except Full:
                    if not self._accepting:
                        self._count("dropped")
                        logging.warning(f"[bridge] shutting down with full queue; dropped topic={msg.topic}")
                        return
        self._count("enqueued")

    # --- internal workers ---
    def _proc_loop(self):
        while True:
            try:
                msg = self.q.get(timeout=0.2)
            except Empty:
                if not self._run:
                    break
                continue
            if self._abort:
                self._count("dropped")
                continue
            self._forward(msg)

    def _forward(self, msg: OutboundMessage):
        retries = self.cfg.mqtt.publish_retries
        delay = self.cfg.mqtt.retry_delay
        for attempt in range(retries + 1):
            try:
                ok = self.mqtt.publish(msg.topic, msg.payload)
            except InvalidTopicError as e:
                # device-supplied names can make topics paho refuses outright
                self._count("publish_errors")
                logging.warning(f"[bridge] dropping topic={msg.topic!r}: {e}")
                return
            except Exception as e:
                logging.warning(f"[bridge] publish raised for topic={msg.topic}: {e}")
                ok = False
            if ok:
                self._count("published")
                logging.debug(f"[bridge] published topic={msg.topic} payload={msg.payload!r}")
                return
            if attempt < retries and not self._abort:
                time.sleep(delay)
                delay *= 2
            else:
                break
        self._count("publish_errors")
        logging.warning(f"[bridge] giving up on topic={msg.topic} after {attempt + 1} attempt(s)")

    # --- observability ---
    def _count(self, key: str, n: int = 1):
        with self._stats_lock:
            self._stats[key] += n

    def stats(self) -> dict:
        with self._stats_lock:
            snap = dict(self._stats)
        snap["queue_size"] = self.q.qsize()
        return snap
