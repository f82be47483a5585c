"""Translate an application chat transcript into Gemini chat history.

The provider only knows two roles (``user`` and ``model``) and has no slot
for system instructions, so behaviour is anchored with a fixed preamble pair
that always leads the history. Only this module knows the provider's role
vocabulary; swapping providers means replacing the adapter, not the
``Message`` model.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Sequence

from ..domain.chat_models import Message, ProviderHistoryEntry, ProviderRole


INSTRUCTION_PROMPT = """
You are an expert HTML and CSS developer specializing in creating landing pages.

Your task is to generate clean, responsive HTML & CSS code based on user descriptions.

Guidelines:
1. Always generate a complete HTML page with embedded CSS
2. Focus on creating attractive, modern designs
3. Use semantic HTML elements
4. Ensure the page is responsive and mobile-friendly
5. Include comments to explain key sections
6. All CSS should be embedded in a <style> tag within the <head>
7. Do not use external libraries or frameworks
8. Make sure the page is visually appealing
9. Use best practices for HTML and CSS
10. Optimize for fast loading

For landing pages, include:
- A clear headline
- An appealing hero section
- Call-to-action buttons
- Clean sections with proper spacing
- A simple footer

Your responses should be only the HTML code, enclosed in ```html and ``` tags.
"""

INSTRUCTION_PREFIX = "I need you to follow these instructions: "
ACKNOWLEDGEMENT = "I understand and will follow your instructions to create HTML and CSS landing pages."

# Anything not listed here is spoken by the model side of the conversation
ROLE_MAP: Dict[str, ProviderRole] = {"user": "user"}
DEFAULT_PROVIDER_ROLE: ProviderRole = "model"


class EmptyTurn(Exception):
    """Raised when a chat request carries no messages at all."""

    def __init__(self) -> None:
        super().__init__("Conversation turn has no messages")


@dataclass(frozen=True)
class AdaptedTurn:
    history: List[ProviderHistoryEntry]
    prompt: str


def to_provider_role(role: str) -> ProviderRole:
    return ROLE_MAP.get(role, DEFAULT_PROVIDER_ROLE)


def preamble(instruction: str = INSTRUCTION_PROMPT) -> List[ProviderHistoryEntry]:
    return [
        ProviderHistoryEntry(role="user", parts=[INSTRUCTION_PREFIX + instruction]),
        ProviderHistoryEntry(role="model", parts=[ACKNOWLEDGEMENT]),
    ]


def adapt_turn(messages: Sequence[Message], instruction: str = INSTRUCTION_PROMPT) -> AdaptedTurn:
    """Split a turn into provider history and the prompt to send.

    The last message is never part of the history; it is returned as the
    prompt. Message content is passed through verbatim.

    Raises
    ------
    EmptyTurn
        If ``messages`` is empty.
    """

    if not messages:
        raise EmptyTurn()
    history = preamble(instruction)
    for msg in messages[:-1]:
        history.append(ProviderHistoryEntry(role=to_provider_role(msg.role), parts=[msg.content]))
    return AdaptedTurn(history=history, prompt=messages[-1].content)
