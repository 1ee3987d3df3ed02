"""Decoding and fan-out of gateway multicast datagrams.

A gateway broadcasts one JSON envelope per event:

    {"cmd": "report", "model": "sensor_ht", "sid": "158d0001a2b3c4",
     "short id": 12345, "data": "{\"temperature\":\"2150\"}"}

The ``data`` member is itself a JSON document encoded as a string. Every field
of that inner document becomes one MQTT message on
``{root}/{model}/{sid}/{field}``; an envelope without fields becomes a single
empty message on ``{root}/{model}/{sid}``.

The outer envelope is decoded best-effort: anything that is not a JSON object
yields an empty envelope. A non-empty ``data`` that does not decode to a JSON
object raises DataDecodeError so the caller can drop that datagram.
"""
import json
import logging
from typing import Any, Dict, List

from mibridge.core.constants import DEVICE_TOPIC, FIELD_TOPIC, TOPIC_PREFIX
from mibridge.core.message import DeviceEnvelope, OutboundMessage
from mibridge.core.utils import render_value

# wire key -> DeviceEnvelope attribute
ENVELOPE_KEYS = {
    "cmd": "command",
    "token": "token",
    "model": "model",
    "sid": "sid",
    "short id": "short_id",
    "data": "data",
}


class DataDecodeError(ValueError):
    """The envelope's ``data`` member is not a JSON object."""

    def __init__(self, envelope: DeviceEnvelope, reason: str):
        super().__init__(f"invalid data for model={envelope.model!r} sid={envelope.sid!r}: {reason}")
        self.envelope = envelope


def parse_envelope(text: str) -> DeviceEnvelope:
    try:
        raw = json.loads(text)
    except (ValueError, TypeError) as e:
        logging.debug(f"[decoder] malformed envelope ignored: {e}")
        return DeviceEnvelope()
    if not isinstance(raw, dict):
        logging.debug(f"[decoder] envelope is not an object: {type(raw).__name__}")
        return DeviceEnvelope()
    # non-string members are treated as absent
    values = {
        attr: raw[key]
        for key, attr in ENVELOPE_KEYS.items()
        if isinstance(raw.get(key), str)
    }
    return DeviceEnvelope(**values)


def parse_fields(envelope: DeviceEnvelope) -> Dict[str, Any]:
    if not envelope.data:
        return {}
    try:
        fields = json.loads(envelope.data)
    except ValueError as e:
        raise DataDecodeError(envelope, str(e)) from e
    if fields is None:
        return {}
    if not isinstance(fields, dict):
        raise DataDecodeError(envelope, f"expected an object, got {type(fields).__name__}")
    return fields


def fan_out(envelope: DeviceEnvelope, fields: Dict[str, Any], root: str = TOPIC_PREFIX) -> List[OutboundMessage]:
    if not fields:
        topic = DEVICE_TOPIC.format(root=root, model=envelope.model, sid=envelope.sid)
        return [OutboundMessage(topic=topic, payload="")]
    return [
        OutboundMessage(
            topic=FIELD_TOPIC.format(root=root, model=envelope.model, sid=envelope.sid, field=name),
            payload=render_value(value),
        )
        for name, value in fields.items()
    ]


def decode(text: str, root: str = TOPIC_PREFIX) -> List[OutboundMessage]:
    """Decode one datagram into the messages to publish.

    Raises DataDecodeError when the envelope carries an undecodable ``data``.
    """
    envelope = parse_envelope(text)
    return fan_out(envelope, parse_fields(envelope), root=root)
