from typing import Iterable
from models.db_models import Speaker


def build_prompt(messages: Iterable) -> str:
    """
    Render a conversation as a speaker-prefixed transcript, one line per message:

        human: Hello
        model: Hi there

    The generator is expected to continue the transcript, so nothing is appended after it.
    """
    prompt = ""
    for message in messages:
        who = message.who.value if isinstance(message.who, Speaker) else str(message.who)
        prompt += f"{who}: {message.body}\n"
    return prompt
