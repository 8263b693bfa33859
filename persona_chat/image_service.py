from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .errors import ImageGenerationError
from .logger_factory import get_logger
from .models import Character, ImageGenerationSetting, MessageFile
from .utils.cancellation import CancelToken
from .utils.logfmt import fmt


@dataclass
class InlineImage:
    mime_type: str
    data: str  # base64

    def to_file(self) -> MessageFile:
        return MessageFile.from_inline(self.mime_type, self.data)


class ImageTaskHandle(ABC):
    """A queued generation (ComfyUI-style) that finishes later."""

    task_id: str

    @abstractmethod
    async def wait(self, cancel: Optional[CancelToken] = None) -> InlineImage:
        """Block until the image is ready; raise ImageGenerationError on failure."""


@dataclass
class ImageResult:
    inline_image: Optional[InlineImage] = None
    task: Optional[ImageTaskHandle] = None
    reason: Optional[str] = None  # backend finish/refusal reason when neither is set


class ImageGenerator(ABC):
    @abstractmethod
    async def generate(self, setting: ImageGenerationSetting, character: Character) -> ImageResult:
        ...


class PollingImageTask(ImageTaskHandle):
    """Polls ``fetch()`` until it yields an image, with a fixed interval and overall timeout."""

    def __init__(
        self,
        task_id: str,
        fetch: Callable[[], Awaitable[Optional[InlineImage]]],
        *,
        interval: float = 2.0,
        timeout: float = 300.0,
    ):
        self.log = get_logger("ImageTask")
        self.task_id = task_id
        self._fetch = fetch
        self.interval = max(0.01, float(interval))
        self.timeout = float(timeout)

    async def wait(self, cancel: Optional[CancelToken] = None) -> InlineImage:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        polls = 0
        while True:
            if cancel is not None:
                cancel.raise_if_cancelled()
            polls += 1
            image = await self._fetch()
            if image is not None:
                self.log.debug(f"[image-task-done] {fmt('task', self.task_id)} {fmt('polls', polls)}")
                return image
            if loop.time() >= deadline:
                raise ImageGenerationError(f"Image task {self.task_id} timed out after {self.timeout:.0f}s")
            if cancel is not None:
                await cancel.sleep(self.interval)
            else:
                await asyncio.sleep(self.interval)
