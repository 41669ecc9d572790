# chatd wire constants (numeric envelope keys and event types)

PROTOCOL_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_ID = 2
K_TS = 3
K_SRC = 4
K_ROOM = 5
K_BODY = 6

# Handshake
T_HELLO = 1
T_WELCOME = 2

# Client -> hub events
T_JOIN_ROOM = 10
T_LEAVE_ROOM = 12

T_ROOM_MESSAGE = 20
T_PRIVATE_MESSAGE = 21

T_TYPING_START = 24
T_TYPING_STOP = 25
T_GET_ONLINE_USERS = 26

T_EDIT_MESSAGE = 27
T_DELETE_MESSAGE = 28
T_ADD_REACTION = 29
T_REMOVE_REACTION = 32
T_MARK_READ = 33
T_FETCH_HISTORY = 34

T_PING = 30
T_PONG = 31

T_ERROR = 40

T_RESOURCE_ENVELOPE = 50

# Hub -> client events
T_USER_ONLINE = 60
T_USER_OFFLINE = 61
T_USER_JOINED_ROOM = 62
T_USER_LEFT_ROOM = 63
T_USER_TYPING = 64
T_USER_STOP_TYPING = 65
T_ONLINE_USERS = 66
T_MESSAGE_EDITED = 67
T_MESSAGE_DELETED = 68
T_MESSAGE_REACTION = 69
T_MESSAGE_READ = 70
T_HISTORY = 71

EVENT_NAMES = {
    T_HELLO: "hello",
    T_WELCOME: "welcome",
    T_JOIN_ROOM: "join_room",
    T_LEAVE_ROOM: "leave_room",
    T_ROOM_MESSAGE: "room_message",
    T_PRIVATE_MESSAGE: "private_message",
    T_TYPING_START: "typing_start",
    T_TYPING_STOP: "typing_stop",
    T_GET_ONLINE_USERS: "get_online_users",
    T_EDIT_MESSAGE: "edit_message",
    T_DELETE_MESSAGE: "delete_message",
    T_ADD_REACTION: "add_reaction",
    T_REMOVE_REACTION: "remove_reaction",
    T_MARK_READ: "mark_read",
    T_FETCH_HISTORY: "fetch_history",
    T_PING: "ping",
    T_PONG: "pong",
    T_ERROR: "error",
    T_RESOURCE_ENVELOPE: "resource_envelope",
    T_USER_ONLINE: "user_online",
    T_USER_OFFLINE: "user_offline",
    T_USER_JOINED_ROOM: "user_joined_room",
    T_USER_LEFT_ROOM: "user_left_room",
    T_USER_TYPING: "user_typing",
    T_USER_STOP_TYPING: "user_stop_typing",
    T_ONLINE_USERS: "online_users",
    T_MESSAGE_EDITED: "message_edited",
    T_MESSAGE_DELETED: "message_deleted",
    T_MESSAGE_REACTION: "message_reaction",
    T_MESSAGE_READ: "message_read",
    T_HISTORY: "history",
}

# HELLO body keys
B_HELLO_NAME = 0
B_HELLO_VER = 1
B_HELLO_CAPS = 2
B_HELLO_TOKEN = 3

# WELCOME body keys (string keys carry the authenticated identity)
B_WELCOME_HUB = 0
B_WELCOME_VER = 1

# RESOURCE_ENVELOPE body keys
B_RES_ID = 0
B_RES_KIND = 1
B_RES_SIZE = 2
B_RES_SHA256 = 3

# Resource kinds
RES_KIND_ENVELOPE = "envelope"

# Message types
MSG_TEXT = "text"
MSG_IMAGE = "image"
MSG_FILE = "file"
MSG_SYSTEM = "system"
MESSAGE_TYPES = (MSG_TEXT, MSG_IMAGE, MSG_FILE, MSG_SYSTEM)

MAX_TEXT_CHARS = 2000
DELETED_TEXT = "This message has been deleted"

USERNAME_MAX_CHARS = 64
