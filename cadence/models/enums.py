from enum import Enum


class ChannelType(str, Enum):
    WHATSAPP_CLOUD = "WHATSAPP_CLOUDAPI"
    LUMIBOT = "LUMIBOT"


class ConversationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class SenderType(str, Enum):
    CLIENT = "CLIENT"
    AI = "AI"
    AGENT = "AGENT"
    SYSTEM = "SYSTEM"


class MessageStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class SequenceKind(str, Enum):
    INACTIVITY = "INACTIVITY"
    ABANDONED_CART = "ABANDONED_CART"
