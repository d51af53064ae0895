"""
Result routing package.

Public API:
- route(response) -> SendDocument | SendText
- deliver(action, messenger)
- ResultConsumer (results-queue loop)
"""

from src.pandoc_bot.routing.result_router import SendDocument, SendText, deliver, route

__all__ = ["SendDocument", "SendText", "deliver", "route"]
