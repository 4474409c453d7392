# Wire protocol verbs (newline-delimited UTF-8 lines)

SUBMIT_NAME = "SUBMIT_NAME"
NAME_ACCEPTED = "NAME_ACCEPTED"
NEW_USER = "NEW_USER"
REMOVE_USER = "REMOVE_USER"
USERLIST_BEGIN = "USERLIST_BEGIN"
USERLIST_END = "USERLIST_END"
MESSAGE = "MESSAGE"

# Sent by the client to leave, echoed by the server before it closes.
EXIT = "EXIT"

LINE_TERMINATOR = b"\n"
ENCODING = "utf-8"

DEFAULT_PORT = 9001
NAME_MAX_CHARS = 32
MAX_LINE_BYTES = 8192

# Bare keywords; a display name equal to one would break roster framing.
RESERVED_NAMES = frozenset(
    {
        SUBMIT_NAME,
        NAME_ACCEPTED,
        NEW_USER,
        REMOVE_USER,
        USERLIST_BEGIN,
        USERLIST_END,
        MESSAGE,
        EXIT,
    }
)
