# Signaling protocol constants (message types, wire keys, close codes)

# Message types
T_OFFER = 0
T_ANSWER = 1
T_ICE_CANDIDATE = 2
T_CLIENT_ID = 3
T_PEER_LIST = 4
T_CREATE_ROOM = 5
T_JOIN_ROOM = 6
T_LEAVE_ROOM = 7
T_ERROR = 8
T_JOIN_OR_CREATE = 9

# Envelope keys
K_TYPE = "type"
K_TARGET = "targetId"
K_SENDER = "senderId"

# Body keys (per message type)
K_OFFER = "offer"
K_ANSWER = "answer"
K_ICE_CANDIDATE = "iceCandidate"
K_CLIENT_ID = "clientId"
K_PEER_LIST = "peerList"
K_ROOM_CODE = "roomCode"
K_ROOM_ID = "roomId"
K_ERROR_MESSAGE = "errorMessage"

# Close codes. 1009 is the standard WebSocket "message too big" code; the
# rest live in the private 4000-4099 range.
CLOSE_MESSAGE_TOO_LARGE = 1009
CLOSE_UNKNOWN_ORIGIN = 4000
CLOSE_INVALID_MESSAGE = 4002
CLOSE_TOO_MANY_CONNECTIONS = 4029
CLOSE_RATE_LIMIT_EXCEEDED = 4030

REASON_MESSAGE_TOO_LARGE = "Message too large."
REASON_UNKNOWN_ORIGIN = "Unable to determine client address."
REASON_INVALID_MESSAGE = "Invalid message"
REASON_INVALID_MESSAGE_TYPE = "Invalid message type"
REASON_TOO_MANY_CONNECTIONS = "Too many connections."
REASON_RATE_LIMIT_EXCEEDED = "Rate limit exceeded."

# Defaults
DEFAULT_PORT = 3000
MAX_MESSAGE_SIZE = 10000  # bytes, summed across the chunks of one frame
MAX_CONNECTIONS_PER_ADDRESS = 10
MAX_MESSAGES_PER_SECOND = 20

ROOM_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
ROOM_CODE_LENGTH = 4
ROOM_CODE_MAX_ATTEMPTS = 100

MAX_PENDING_SENDS = 256  # queued outbound payloads per connection
