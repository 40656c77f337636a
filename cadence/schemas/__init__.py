from cadence.schemas.conversation import ConversationMetadata
from cadence.schemas.jobs import ProcessMessageJob, SequenceStepJob
from cadence.schemas.webhook import InboundMessage, WebhookResponse

__all__ = [
    "ConversationMetadata",
    "ProcessMessageJob",
    "SequenceStepJob",
    "InboundMessage",
    "WebhookResponse",
]
