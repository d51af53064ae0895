"""
Dialogue package.

Contains:
- ConversationState variants (what a conversation is waiting for)
- Inbound events and outbound dialogue actions
- The pure DialogueEngine transition table
- ConversationHandler, which applies one inbound event end to end
"""

from src.pandoc_bot.dialogue.engine import DialogueEngine
from src.pandoc_bot.dialogue.events import (
    ChoiceSelected,
    FileReceived,
    Noop,
    PublishJob,
    SendError,
    SendPrompt,
    TextReceived,
)
from src.pandoc_bot.dialogue.states import (
    AwaitingFile,
    AwaitingSourceFormat,
    AwaitingTargetFormat,
    ConversationState,
    Idle,
)

__all__ = [
    "DialogueEngine",
    "ChoiceSelected",
    "FileReceived",
    "TextReceived",
    "Noop",
    "PublishJob",
    "SendError",
    "SendPrompt",
    "AwaitingFile",
    "AwaitingSourceFormat",
    "AwaitingTargetFormat",
    "ConversationState",
    "Idle",
]
