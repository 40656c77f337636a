from cadence.models.ai_stage import AIStage, AIStageAction
from cadence.models.client import Client
from cadence.models.conversation import Conversation
from cadence.models.follow_up import FollowUp
from cadence.models.message import Message
from cadence.models.queue_job import QueueJob
from cadence.models.sequence_rule import AbandonedCartRule, FollowUpRule
from cadence.models.workspace import Workspace

__all__ = [
    "Workspace",
    "Client",
    "Conversation",
    "Message",
    "FollowUp",
    "FollowUpRule",
    "AbandonedCartRule",
    "AIStage",
    "AIStageAction",
    "QueueJob",
]
