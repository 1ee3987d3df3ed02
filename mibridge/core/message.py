from dataclasses import dataclass


@dataclass(frozen=True)
class DeviceEnvelope:
    command: str = ""        # "cmd" on the wire (report, heartbeat, read_ack, ...)
    token: str = ""
    model: str = ""
    sid: str = ""
    short_id: str = ""       # "short id" on the wire
    data: str = ""           # double-encoded JSON document with the field values


@dataclass(frozen=True)
class OutboundMessage:
    topic: str
    payload: str = ""
