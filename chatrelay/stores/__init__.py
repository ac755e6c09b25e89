from chatrelay.stores.direct_messages import DirectMessageStore
from chatrelay.stores.global_feed import GlobalFeed, GlobalMessage
from chatrelay.stores.presence import PresenceEntry, PresenceRegistry
from chatrelay.stores.users import Resolution, UserDirectory

__all__ = [
    "DirectMessageStore",
    "GlobalFeed",
    "GlobalMessage",
    "PresenceEntry",
    "PresenceRegistry",
    "Resolution",
    "UserDirectory",
]
