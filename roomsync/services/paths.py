# roomsync/services/paths.py

from roomsync.services.backend import LogBackend, Reference

ROOMS_PATH = "rooms"
USERS_PATH = "users"
FLAGGED_PATH = "flagged"
TIME_PATH = "time"
PUBLIC_ROOMS_PATH = "public-rooms"

META_KEY = "meta"
ROOM_USERS_KEY = "users"
MESSAGES_KEY = "messages"
TYPING_KEY = "typing"
STATE_KEY = "state"
ONLINE_KEY = "online"


class Paths:
    """
    Resolves room and user ids to backend references.

    Layout:
        rooms/{rid}/meta | users | messages | typing | state
        users/{uid}/rooms/{rid}, users/{uid}/online
        flagged/{mid}, time/{uid}, public-rooms/{rid}
    """

    def __init__(self, backend: LogBackend) -> None:
        self.backend = backend

    def ref(self, *parts: str) -> Reference:
        return self.backend.reference("/".join(parts))

    def room_ref(self, rid: str) -> Reference:
        return self.ref(ROOMS_PATH, rid)

    def room_meta_ref(self, rid: str) -> Reference:
        return self.ref(ROOMS_PATH, rid, META_KEY)

    def room_users_ref(self, rid: str) -> Reference:
        return self.ref(ROOMS_PATH, rid, ROOM_USERS_KEY)

    def room_messages_ref(self, rid: str) -> Reference:
        return self.ref(ROOMS_PATH, rid, MESSAGES_KEY)

    def room_typing_ref(self, rid: str) -> Reference:
        return self.ref(ROOMS_PATH, rid, TYPING_KEY)

    def room_state_ref(self, rid: str) -> Reference:
        return self.ref(ROOMS_PATH, rid, STATE_KEY)

    def user_rooms_ref(self, uid: str) -> Reference:
        return self.ref(USERS_PATH, uid, ROOMS_PATH)

    def user_online_ref(self, uid: str) -> Reference:
        return self.ref(USERS_PATH, uid, ONLINE_KEY)

    def flagged_message_ref(self, mid: str) -> Reference:
        return self.ref(FLAGGED_PATH, mid)

    def time_ref(self, uid: str) -> Reference:
        return self.ref(TIME_PATH, uid)

    def public_room_ref(self, rid: str) -> Reference:
        return self.ref(PUBLIC_ROOMS_PATH, rid)
