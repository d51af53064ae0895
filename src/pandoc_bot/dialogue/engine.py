"""
Dialogue engine.

Pure transition function: (state, event) -> (next_state, actions).

Rules:
- Every (state, event) pair has an answer; there is no "unhandled" case.
- An event that does not fit the current state is rejected with a single
  SendError action and the SAME state object is returned.
- Accepted events move strictly forward; AwaitingFile returns to Idle once
  the job is handed off (we do not wait for the worker).
- Idle answers any event with the start prompt and AwaitingSourceFormat,
  except a valid source-format choice: that skips the greeting and goes
  straight to AwaitingTargetFormat, so "markdown" -> "pdf" -> file works
  from a fresh conversation without a separate hello.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Tuple

from src.pandoc_bot.config.settings import settings
from src.pandoc_bot.dialogue.events import (
    Action,
    ChoiceSelected,
    Event,
    FileReceived,
    PublishJob,
    SendError,
    SendPrompt,
)
from src.pandoc_bot.dialogue.states import (
    AwaitingFile,
    AwaitingSourceFormat,
    AwaitingTargetFormat,
    ConversationState,
    Idle,
)

START_PROMPT = "Let's start! Tell me the type of the original document."
SOURCE_ERROR = "That is not a format I can convert from. Tell me the type of the original document."
TARGET_PROMPT = "The type of the original document is set to `{source}`. What format do you want for the output?"
TARGET_ERROR = "That is not a format I can convert to. What format do you want for the output?"
FILE_PROMPT = "The output format is set to `{target}`. Now send me the file to be converted."
FILE_ERROR = "Send me the file to be converted."
PROCESSING_PROMPT = "The conversion is being performed ..."

Transition = Tuple[ConversationState, List[Action]]


def _normalize_tags(tags: Iterable[str]) -> Tuple[str, ...]:
    out: List[str] = []
    for tag in tags:
        t = (tag or "").strip().lower()
        if t and t not in out:
            out.append(t)
    return tuple(out)


class DialogueEngine:
    """
    Stateless transition table over a fixed pair of format sets.
    """

    def __init__(
        self,
        from_formats: Optional[Iterable[str]] = None,
        to_formats: Optional[Iterable[str]] = None,
    ) -> None:
        self.from_formats = _normalize_tags(from_formats if from_formats is not None else settings.from_formats)
        self.to_formats = _normalize_tags(to_formats if to_formats is not None else settings.to_formats)
        if not self.from_formats or not self.to_formats:
            raise ValueError("DialogueEngine: from_formats and to_formats must not be empty")

    @property
    def known_formats(self) -> Tuple[str, ...]:
        return _normalize_tags(self.from_formats + self.to_formats)

    def transition(self, state: ConversationState, event: Event) -> Transition:
        if isinstance(state, Idle):
            return self._on_idle(state, event)
        if isinstance(state, AwaitingSourceFormat):
            return self._on_awaiting_source(state, event)
        if isinstance(state, AwaitingTargetFormat):
            return self._on_awaiting_target(state, event)
        if isinstance(state, AwaitingFile):
            return self._on_awaiting_file(state, event)
        raise TypeError(f"Unknown conversation state: {state!r}")

    # --- per-state handlers -------------------------------------------------

    def _on_idle(self, state: Idle, event: Event) -> Transition:
        # A valid source choice from Idle answers the first question directly
        # (e.g. a reply to an options list still on screen).
        source = self._match(event, self.from_formats)
        if source is not None:
            return self._accept_source(source)
        return AwaitingSourceFormat(), [SendPrompt(START_PROMPT, self.from_formats)]

    def _on_awaiting_source(self, state: AwaitingSourceFormat, event: Event) -> Transition:
        source = self._match(event, self.from_formats)
        if source is None:
            return state, [SendError(SOURCE_ERROR, self.from_formats)]
        return self._accept_source(source)

    def _on_awaiting_target(self, state: AwaitingTargetFormat, event: Event) -> Transition:
        target = self._match(event, self.to_formats)
        if target is None:
            return state, [SendError(TARGET_ERROR, self.to_formats)]
        return (
            AwaitingFile(source_format=state.source_format, target_format=target),
            [SendPrompt(FILE_PROMPT.format(target=target))],
        )

    def _on_awaiting_file(self, state: AwaitingFile, event: Event) -> Transition:
        if not isinstance(event, FileReceived) or not event.blob_ref:
            return state, [SendError(FILE_ERROR)]
        job = PublishJob(
            source_format=state.source_format,
            target_format=state.target_format,
            blob_ref=event.blob_ref,
            file_id=event.file_id or event.blob_ref,
            filename=event.filename,
        )
        return Idle(), [SendPrompt(PROCESSING_PROMPT), job]

    # --- helpers ------------------------------------------------------------

    def _accept_source(self, source: str) -> Transition:
        return (
            AwaitingTargetFormat(source_format=source),
            [SendPrompt(TARGET_PROMPT.format(source=source), self.to_formats)],
        )

    @staticmethod
    def _match(event: Event, allowed: Tuple[str, ...]) -> Optional[str]:
        """
        Return the canonical tag if `event` is a choice from `allowed`, else None.
        """
        if not isinstance(event, ChoiceSelected):
            return None
        tag = (event.tag or "").strip().lower()
        return tag if tag in allowed else None
