from .filter_index import FilterIndex, FilterMode, filter_conversations
from .send_pipeline import OutgoingMessage, SendPipeline

__all__ = [
    "FilterIndex",
    "FilterMode",
    "OutgoingMessage",
    "SendPipeline",
    "filter_conversations",
]
