import json


def render_value(value) -> str:
    """Render a decoded field value as MQTT payload text.

    Strings pass through, numbers use str(), booleans and containers are
    rendered as JSON text and null becomes an empty payload.
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", errors="replace")
    return json.dumps(value, separators=(",", ":"))
