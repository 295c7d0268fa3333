"""Screencast capture — pushes tab frames over CDP instead of polling screenshots."""

from __future__ import annotations

import logging
from typing import Any

from playwright.async_api import CDPSession

from webpilot.executor.interfaces import FrameHandler
from webpilot.models.config import ScreencastConfig

from .session import PlaywrightTab

logger = logging.getLogger(__name__)


class ScreencastStream:
    """A running ``Page.startScreencast`` session for one tab."""

    def __init__(self, client: CDPSession, on_frame: FrameHandler):
        self.client = client
        self.on_frame = on_frame
        self.frames = 0
        self._stopped = False

    async def _handle_frame(self, params: dict[str, Any]) -> None:
        if self._stopped:
            return
        session_id = params.get("sessionId")
        self.frames += 1

        async def ack() -> None:
            if self._stopped:
                return
            try:
                await self.client.send("Page.screencastFrameAck", {"sessionId": session_id})
            except Exception as e:
                logger.debug("Frame ack failed: %s", e)

        try:
            await self.on_frame(params.get("data", ""), ack)
        except Exception as e:
            logger.warning("Frame handler failed: %s", e)

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        try:
            await self.client.send("Page.stopScreencast")
        finally:
            await self.client.detach()


class ScreencastCapture:
    """Frame capture provider backed by the CDP screencast domain."""

    def __init__(self, config: ScreencastConfig | None = None):
        self.config = config or ScreencastConfig()

    async def start_capture(self, tab: PlaywrightTab, on_frame: FrameHandler) -> ScreencastStream:
        page = tab.page
        client = await page.context.new_cdp_session(page)
        stream = ScreencastStream(client, on_frame)
        client.on("Page.screencastFrame", stream._handle_frame)
        await client.send("Page.startScreencast", {
            "format": self.config.format,
            "quality": self.config.quality,
            "maxWidth": self.config.max_width,
            "maxHeight": self.config.max_height,
            "everyNthFrame": self.config.every_nth_frame,
        })
        return stream
