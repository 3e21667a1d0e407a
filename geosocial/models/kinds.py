from enum import Enum


class EntityKind(str, Enum):
    USER = "user"
    GROUP = "group"
    ACTIVITY = "activity"


class ActivityType(str, Enum):
    USER_CHECKIN = "USER_CHECKIN"
    GROUP_CREATE = "GROUP_CREATE"
    GROUP_JOIN = "GROUP_JOIN"
    GROUP_LEAVE = "GROUP_LEAVE"
    MESSAGE_SENT = "MESSAGE_SENT"
