"""Demo pager conversation for the console.

    <alice> list fruit
    <bot> fruit 1/4: fruit #1, fruit #2, fruit #3
    <bot> say "page_to <n>" for another page
    <alice> page_to 3
    <bot> fruit 3/4: fruit #7, fruit #8, fruit #9
"""

from __future__ import annotations

import logging

from .errors import WaitAbortedError
from .message import Message
from .plugin import FiberPlugin
from .routing import TemplateRouter

logger = logging.getLogger(__name__)


class PagerDemo:
    """Lists made-up items a page at a time, asking which page to show next."""

    def __init__(self, fibers: FiberPlugin, total: int = 10, page_size: int = 3) -> None:
        self.fibers = fibers
        self.total = total
        self.page_size = page_size

    def register(self, router: TemplateRouter) -> None:
        router.map("list *topic", self.list_items, fiber=True)

    def pages(self, topic: str) -> list[list[str]]:
        items = [f"{topic} #{n}" for n in range(1, self.total + 1)]
        return [items[i : i + self.page_size] for i in range(0, len(items), self.page_size)]

    async def list_items(self, message: Message, params: dict[str, str]) -> None:
        topic = params.get("topic") or "item"
        pages = self.pages(topic)
        page = 1
        while True:
            await message.reply(f"{topic} {page}/{len(pages)}: {', '.join(pages[page - 1])}")
            await message.reply('say "page_to <n>" for another page')
            try:
                answer, answer_params = await self.fibers.wait_for(message.source, "page_to :page")
            except WaitAbortedError as e:
                logger.debug(f"Pager for {topic} ended: {e}")
                return

            try:
                requested = int(answer_params["page"])
            except ValueError:
                await answer.reply(f"not a page number: {answer_params['page']}")
                return
            if not 1 <= requested <= len(pages):
                await answer.reply(f"no page {requested}, there are {len(pages)}")
                return
            message = answer
            page = requested
