"""
Bot-challenge interruptions handed to a human
"""
from .broker import InterruptionBroker, TicketNotFound
from .checkpoints import CheckpointStore
from .links import MagicLinkSigner
from .replies import InboundReplyRouter

__all__ = [
    "InterruptionBroker",
    "TicketNotFound",
    "CheckpointStore",
    "MagicLinkSigner",
    "InboundReplyRouter",
]
