from __future__ import annotations

from typing import Optional, Protocol, Sequence


class Messenger(Protocol):
    """
    Outbound chat transport.

    Implementations raise TransportFailure when a send does not go through.
    """

    async def send_prompt(
        self,
        conversation_id: int,
        text: str,
        options: Optional[Sequence[str]] = None,
    ) -> None: ...

    async def send_error(
        self,
        conversation_id: int,
        text: str,
        options: Optional[Sequence[str]] = None,
    ) -> None: ...

    async def send_document(
        self,
        conversation_id: int,
        data: bytes,
        filename: str,
        caption: str,
    ) -> None: ...
