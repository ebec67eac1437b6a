"""Message types of the ``/ws/events`` push channel."""

# Authority -> server
MSG_HEARTBEAT = "heartbeat"
MSG_EVENT = "event"
MSG_EVENTS = "events"
MSG_SNAPSHOT = "snapshot"

# Server -> authority
MSG_HEARTBEAT_ACK = "heartbeat_ack"
MSG_EVENT_ACK = "event_ack"
MSG_EVENT_DUPLICATE = "event_duplicate"
MSG_SESSION_SNAPSHOT = "session_snapshot"
MSG_ERROR = "error"
