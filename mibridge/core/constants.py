
# Gateway multicast protocol (fixed by the gateway firmware)
MULTICAST_GROUP = "224.0.0.50"
MULTICAST_PORT = 9898
MULTICAST_BIND = "0.0.0.0"
RECV_BUFFER_SIZE = 1024

TOPIC_PREFIX = "/mibridge"
DEVICE_TOPIC = "{root}/{model}/{sid}"
FIELD_TOPIC = "{root}/{model}/{sid}/{field}"

CLIENT_ID = "mibridge"
DEFAULT_QUEUE_SIZE = 10000
DEFAULT_LINGER_SECS = 0.25
