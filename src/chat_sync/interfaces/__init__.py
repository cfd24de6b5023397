from .protocols import ConversationGateway

__all__ = ["ConversationGateway"]
