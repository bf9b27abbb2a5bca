class ChatError(Exception):
    """Base class for errors raised by the conversation services."""


class ConversationNotFound(ChatError):
    def __init__(self, conversation_id: int):
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id


class MessageNotFound(ChatError):
    def __init__(self, message_id: int):
        super().__init__(f"Message {message_id} not found")
        self.message_id = message_id


class ModelNotFound(ChatError):
    def __init__(self, name: str):
        super().__init__(f"Model '{name}' is not known; refresh the model list first")
        self.name = name


class ForkMismatch(ChatError):
    def __init__(self, message_id: int, conversation_id: int):
        super().__init__(f"Message {message_id} does not belong to conversation {conversation_id}")
        self.message_id = message_id
        self.conversation_id = conversation_id


class NoModelSelected(ChatError):
    def __init__(self, conversation_id: int):
        super().__init__(f"Conversation {conversation_id} has no model selected")
        self.conversation_id = conversation_id


class GenerationUnavailable(ChatError):
    """The generator could not be reached, or refused the request, when a generation was started."""
