# Wave channel protocol constants (verbs, topics, envelope and header keys)

# Packet verbs
V_CONNECTED = "CONNECTED"
V_ERROR = "ERROR"

# Directives (also used as packet verbs for relayed events)
D_CREATE = "CREATE"
D_UPDATE = "UPDATE"
D_DELETE = "DELETE"

# Topics
TOPIC_CONTACT = "contact"
TOPIC_CONTACT_STATUS = "contact/status"
TOPIC_CONTACT_INFORMATION = "contact/information"
TOPIC_GROUP = "group"
TOPIC_GROUP_INFORMATION = "group/information"
TOPIC_GROUP_MEMBER = "group/member"
TOPIC_MESSAGE = "message"

# Envelope keys
K_ORIGIN = "origin"
K_TARGETS = "target_s"
K_DIRECTIVE = "directive"
K_TOPIC = "topic"
K_PAYLOAD = "payload"
K_HEADERS = "headers"
K_BODY = "body"

# Handshake message keys
K_TOKEN = "token"

# Header keys consulted when resolving recipients
H_FOR = "for"
H_DIRECTIVE = "directive"
H_OLD_USERNAME = "old_username"
H_USER = "user"
H_GROUP = "group"
H_MEMBER = "member"
H_CONTACT = "contact"

# Body keys
B_USERNAME = "username"
B_MEMBERS = "members"

# Contact status directives carried in the `directive` header
STATUS_ADDS_CONTACT = frozenset({"accept", "unblock"})
STATUS_REMOVES_CONTACT = frozenset({"decline", "block"})

# WebSocket close codes (application range)
CLOSE_SUPERSEDED = 4000
CLOSE_HANDSHAKE_TIMEOUT = 4001
