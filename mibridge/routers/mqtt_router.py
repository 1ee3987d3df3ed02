import logging
import threading
import paho.mqtt.client as mqtt

from mibridge.config.schema import MQTTConfig


class BrokerConnectError(ConnectionError):
    pass


class InvalidTopicError(ValueError):
    """The broker client rejected the topic itself (wildcards, length); retrying cannot help."""


class MQTTRouter:
    """Single broker connection used by the bridge publish loop.

    start() blocks until the broker accepts the connection; afterwards paho's
    network thread keeps the session alive and reconnects with backoff.
    """

    def __init__(self, name: str, cfg: MQTTConfig):
        self.name = name
        self.cfg = cfg
        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=cfg.client_id)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_log = self._on_log
        self._lock = threading.Lock()
        self._run = False
        self._connected = threading.Event()
        self._disconnected = threading.Event()
        self._ever_connected = False
        self._last_reason = None

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    def start(self):
        host, port = self.cfg.host, int(self.cfg.port)
        if self.cfg.username:
            self._client.username_pw_set(self.cfg.username, self.cfg.password)
        self._client.reconnect_delay_set(self.cfg.reconnect_min_delay, self.cfg.reconnect_max_delay)
        self._run = True
        logging.info(f"[mqtt:{self.name}] connecting {host}:{port} as client_id={self.cfg.client_id}")
        try:
            self._client.connect(host, port, keepalive=self.cfg.keepalive)
        except OSError as e:
            self._run = False
            raise BrokerConnectError(f"cannot reach broker {host}:{port}: {e}") from e
        self._client.loop_start()
        if not self._connected.wait(timeout=self.cfg.connect_timeout):
            self._run = False
            self._client.loop_stop()
            reason = self._last_reason or f"no CONNACK within {self.cfg.connect_timeout:.1f}s"
            raise BrokerConnectError(f"broker {host}:{port} did not accept connection: {reason}")
        logging.info(f"[mqtt:{self.name}] connected")

    def stop(self, linger: float = None):
        """Disconnect, waiting up to ``linger`` seconds for the DISCONNECT to go out."""
        linger = self.cfg.linger if linger is None else linger
        self._run = False
        with self._lock:
            self._client.disconnect()
        # set by on_disconnect once the network loop has flushed the DISCONNECT
        self._disconnected.wait(timeout=linger)
        self._client.loop_stop()
        self._connected.clear()
        logging.info(f"[mqtt:{self.name}] disconnected")

    def publish(self, topic: str, payload: str, qos: int = 0, retain: bool = False) -> bool:
        """Publish one message and wait for the local transport to send it.

        Returns False (after logging) when the message could not be handed to
        the broker connection. Raises InvalidTopicError when the topic is not
        a valid publish topic.
        """
        if not self._connected.is_set():
            logging.warning(f"[mqtt:{self.name}] publish failed (not connected) topic={topic}")
            return False
        try:
            with self._lock:
                info = self._client.publish(topic, payload, qos=qos, retain=retain)
        except ValueError as e:
            logging.warning(f"[mqtt:{self.name}] invalid topic={topic!r}: {e}")
            raise InvalidTopicError(str(e)) from e
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logging.warning(f"[mqtt:{self.name}] publish failed rc={info.rc} ({mqtt.error_string(info.rc)}) topic={topic}")
            return False
        try:
            info.wait_for_publish(timeout=self.cfg.publish_timeout)
        except (ValueError, RuntimeError) as e:
            logging.warning(f"[mqtt:{self.name}] publish failed topic={topic}: {e}")
            return False
        if not info.is_published():
            logging.warning(f"[mqtt:{self.name}] publish not acknowledged within {self.cfg.publish_timeout:.1f}s topic={topic}")
            return False
        return True

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            self._last_reason = str(reason_code)
            logging.warning(f"[mqtt:{self.name}] on_connect rc={reason_code}")
            return
        if self._ever_connected:
            logging.info(f"[mqtt:{self.name}] reconnected")
        self._ever_connected = True
        self._last_reason = None
        self._disconnected.clear()
        self._connected.set()

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        self._connected.clear()
        self._disconnected.set()
        if not self._run:
            return
        self._last_reason = str(reason_code)
        logging.warning(f"[mqtt:{self.name}] unexpected disconnect rc={reason_code}; will retry")

    def _on_log(self, client, userdata, level, buf):
        logging.debug(f"[mqtt:{self.name}] paho_log level={level} msg={buf}")
