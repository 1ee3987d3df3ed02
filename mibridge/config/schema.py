from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from mibridge.core.constants import (
    CLIENT_ID, DEFAULT_LINGER_SECS, DEFAULT_QUEUE_SIZE, MULTICAST_GROUP,
    MULTICAST_PORT, RECV_BUFFER_SIZE, TOPIC_PREFIX,
)

LogLevel = Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"]


class MQTTConfig(BaseModel):
    host: str = "localhost"
    port: int = 1883
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: str = CLIENT_ID
    topic_prefix: str = TOPIC_PREFIX
    keepalive: int = 60
    # seconds to wait for CONNACK at startup before giving up
    connect_timeout: float = 5.0
    publish_timeout: float = 5.0
    publish_retries: int = Field(default=2, ge=0)
    retry_delay: float = 0.5
    reconnect_min_delay: int = 1
    reconnect_max_delay: int = 60
    linger: float = DEFAULT_LINGER_SECS


class MulticastConfig(BaseModel):
    # None joins on the default interface
    interface: Optional[str] = None
    group: str = MULTICAST_GROUP
    port: int = MULTICAST_PORT
    buffer_size: int = Field(default=RECV_BUFFER_SIZE, gt=0)


class QueueConfig(BaseModel):
    max_size: int = Field(default=DEFAULT_QUEUE_SIZE, gt=0)
    overflow: Literal["block", "drop_oldest"] = "block"
    drain_timeout: float = 5.0


class BridgeConfig(BaseModel):
    mqtt: MQTTConfig = Field(default_factory=MQTTConfig)
    multicast: MulticastConfig = Field(default_factory=MulticastConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    log_level: LogLevel = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, value):
        return value.upper() if isinstance(value, str) else value
