# chatrelay protocol constants (numeric envelope keys, destinations, topics)

CHAT_VERSION = 1

# Envelope keys
K_V = 0
K_DEST = 1
K_ID = 2
K_TS = 3
K_BODY = 4

# Body keys (string-keyed; these mirror the client-facing ChatMessage shape)
B_SENDER = "sender"
B_CONTENT = "content"
B_TYPE = "type"

# Inbound destinations
D_SEND_MESSAGE = "chat.sendMessage"
D_ADD_USER = "chat.adduser"

# Broadcast topic every connection is subscribed to on registration
TOPIC_PUBLIC = "public"

IDENTITY_MAX_CHARS = 32
