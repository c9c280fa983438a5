# RFS protocol constants (numeric keys and message types)

RFS_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_ID = 2
K_TS = 3
K_SRC = 4
K_ROOM = 5
K_BODY = 6

# Message types: client -> hub
T_CREATE = 1
T_JOIN_REQUEST = 2
T_CONNECT = 3
T_LEAVE = 4
T_UPLOAD = 5
T_FETCH = 6

# Message types: hub -> client
T_INVITE = 10
T_ROOM_DATA = 11
T_UPLOADED = 12
T_FILE = 13

# Room events, fanned out to every member
T_NEW_USER = 20
T_USER_DISCONNECTED = 21
T_FILE_UPLOAD = 22
T_USERNAME_TAKEN = 23

T_PING = 30
T_PONG = 31

T_ERROR = 40

# CREATE / JOIN_REQUEST body keys
B_USERNAME = 0

# INVITE body keys
B_INVITE_ROOM = 0
B_INVITE_CODE = 1
B_INVITE_USERNAME = 2

# CONNECT body keys
B_CONNECT_CODE = 0

# UPLOAD body keys (announces an RNS.Resource that follows)
B_UP_ID = 0
B_UP_TOKEN = 1
B_UP_NAME = 2
B_UP_SIZE = 3
B_UP_SHA256 = 4

# UPLOADED body keys
B_UPLOADED_ID = 0
B_UPLOADED_PATH = 1

# FETCH body keys
B_FETCH_TOKEN = 0
B_FETCH_PATH = 1

# FILE body keys (announces an outbound RNS.Resource)
B_FILE_ID = 0
B_FILE_NAME = 1
B_FILE_PATH = 2
B_FILE_SIZE = 3
B_FILE_SHA256 = 4
B_FILE_KIND = 5

# ERROR body keys
B_ERR_KIND = 0
B_ERR_TEXT = 1

# Outbound resource kinds
RES_KIND_FILE = "file"
RES_KIND_EVENT = "event"
