import argparse
import logging
import signal
import threading
from typing import get_args
from mibridge.config.loader import ConfigError, load_config
from mibridge.config.schema import LogLevel
from mibridge.core.bridge import Bridge
from mibridge.routers.mqtt_router import BrokerConnectError, MQTTRouter
from mibridge.transports.multicast import MulticastReceiver

LOG_FORMAT = "%(asctime)s %(levelname)s %(threadName)s %(message)s"


def build_parser():
    p = argparse.ArgumentParser("mibridge", description="Gateway multicast to MQTT bridge")
    p.add_argument("--config", "-c", help="Path to YAML config (defaults + env when omitted)")
    p.add_argument("--interface", "-i", help="Network interface to join the multicast group on")
    p.add_argument("--host", help="MQTT broker host")
    p.add_argument("--port", type=int, help="MQTT broker port")
    p.add_argument("--log-level", type=str.upper, choices=get_args(LogLevel), help="Logging level")
    return p


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        logging.basicConfig(format=LOG_FORMAT)
        logging.error(str(e))
        return 2

    # command line beats file and environment
    if args.interface:
        cfg.multicast.interface = args.interface
    if args.host:
        cfg.mqtt.host = args.host
    if args.port:
        cfg.mqtt.port = args.port
    logging.basicConfig(level=args.log_level or cfg.log_level, format=LOG_FORMAT)

    mqtt_router = MQTTRouter("mqtt", cfg.mqtt)
    receivers = {"gateway": MulticastReceiver("gateway", cfg.multicast)}
    bridge = Bridge(cfg, receivers, mqtt_router)

    # wire receivers to the bridge
    for r in receivers.values():
        r.on_datagram = bridge.on_datagram

    try:
        bridge.start()
    except BrokerConnectError as e:
        logging.error(f"[bridge] {e}")
        return 1

    stop = threading.Event()

    def _on_signal(signum, _frame):
        logging.info(f"[bridge] received signal {signum}; shutting down")
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)
    try:
        while not stop.is_set():
            stop.wait(1.0)
    finally:
        bridge.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
