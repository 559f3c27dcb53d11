from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from audio.engine import PlaybackEngine
from models import PlaybackProgress, SourceInfo
from resolver import SourceResolverClient
from utils import clamp, format_time

logger = logging.getLogger(__name__)

__all__ = ["PlaybackSession", "format_time"]


class PlaybackSession:
    """Controller the UI talks to: resolves remote sources and drives the engine."""

    def __init__(self, engine: PlaybackEngine, resolver: Optional[SourceResolverClient] = None):
        self.engine = engine
        self.resolver = resolver or SourceResolverClient()
        self.info: Optional[SourceInfo] = None
        self._fallback_duration = 0.0

    async def load_remote(
        self,
        locator: str,
        on_progress: Optional[Callable[[str], None]] = None,
    ) -> SourceInfo:
        info = await asyncio.to_thread(self.resolver.get_info, locator)
        self.info = info
        self._fallback_duration = info.duration_sec
        duration = await self.engine.load_url(self.resolver.stream_url(locator), on_progress)
        if duration > 0:
            self._fallback_duration = duration
        logger.info("Loaded remote source: %s (%s)", info.title, format_time(self.duration()))
        return info

    async def load_local(self, path: str) -> float:
        data = await asyncio.to_thread(_read_bytes, path)
        self.info = None
        self._fallback_duration = 0.0
        return await self.engine.load_file(data)

    def toggle_playback(self) -> None:
        if self.engine.is_playing:
            self.engine.pause()
        else:
            self.engine.play()

    def set_semitones(self, semitones: float) -> None:
        # The engine rounds to whole cents.
        self.engine.set_detune(semitones * 100)

    def duration(self) -> float:
        return self.engine.get_duration() or self._fallback_duration

    def progress(self) -> PlaybackProgress:
        position = self.engine.get_current_time()
        duration = self.duration()
        fraction = clamp(position / duration, 0.0, 1.0) if duration > 0 else 0.0
        return PlaybackProgress(position_sec=position, duration_sec=duration, fraction=fraction)


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()
