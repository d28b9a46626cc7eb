from __future__ import annotations

import logging
from types import TracebackType
from typing import Optional, Type

from .config import DEFAULT_PROMPT
from .errors import ConnectionFailed, GlucotagError, HardwareUnavailable, UnsupportedTagType
from .radio import DetectedTag, PollingMode, RadioBackend, RadioSession

logger = logging.getLogger(__name__)


class TagSession:
    """
    Lifecycle of one exclusive radio reading session: begin, connect to the
    first detected tag, invalidate. Always invalidated on context exit.
    """

    def __init__(
        self,
        radio: RadioBackend,
        *,
        prompt: str = DEFAULT_PROMPT,
        polling: PollingMode = PollingMode.ISO15693,
    ) -> None:
        self.radio = radio
        self.prompt = prompt
        self.polling = polling
        self._session: Optional[RadioSession] = None
        self._tag: Optional[DetectedTag] = None
        self._invalidated = False
        self.invalidation_message: Optional[str] = None

    @property
    def invalidated(self) -> bool:
        return self._invalidated

    @property
    def tag(self) -> Optional[DetectedTag]:
        return self._tag

    @property
    def radio_session(self) -> RadioSession:
        if self._session is None:
            raise RuntimeError("Session has not begun")
        return self._session

    async def begin(self) -> None:
        if not self.radio.is_available():
            raise HardwareUnavailable("NFC not available on this device")
        try:
            session = await self.radio.start(self.polling)
        except HardwareUnavailable:
            raise
        except Exception as exc:
            raise HardwareUnavailable(f"Could not start reading session: {exc}") from exc
        session.alert_message = self.prompt
        session.add_invalidation_callback(self._on_platform_invalidated)
        self._session = session
        self._invalidated = False
        logger.debug("Reading session started (%s)", self.polling.value)

    async def connect_first_tag(self) -> DetectedTag:
        session = self.radio_session
        try:
            tags = await session.detect_tags()
        except Exception as exc:
            await self.invalidate(f"Tag detection failed: {exc}")
            raise ConnectionFailed(f"Tag detection failed: {exc}") from exc
        if not tags:
            await self.invalidate("No tag detected")
            raise ConnectionFailed("No tag detected")
        first = tags[0]
        logger.debug("Detected %d tag(s); connecting to %s", len(tags), first.identifier)
        if first.tag_type.lower() != self.polling.value:
            error = UnsupportedTagType(first.tag_type, self.polling.value)
            await self.invalidate("Unsupported tag type")
            raise error
        try:
            await session.connect(first)
        except Exception as exc:
            await self.invalidate(str(exc) or "Connection failed")
            raise ConnectionFailed(f"Connection to tag {first.identifier} failed: {exc}") from exc
        self._tag = first
        logger.debug("Connected to tag %s", first.identifier)
        return first

    def set_alert(self, message: str) -> None:
        if self._session is not None and not self._invalidated:
            self._session.alert_message = message

    async def invalidate(self, message: Optional[str] = None) -> None:
        if self._invalidated:
            return
        self._invalidated = True
        self.invalidation_message = message
        if self._session is not None:
            await self._session.invalidate(message)
        if message:
            logger.info("Session invalidated: %s", message)
        else:
            logger.debug("Session closed")

    def _on_platform_invalidated(self, message: Optional[str]) -> None:
        if not self._invalidated:
            self._invalidated = True
            self.invalidation_message = message
            logger.info("Session invalidated by platform: %s", message or "cancelled")

    async def __aenter__(self) -> "TagSession":
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        if exc is None:
            await self.invalidate()
        elif isinstance(exc, GlucotagError):
            await self.invalidate(str(exc))
        else:
            await self.invalidate("Scan failed. Try again.")
