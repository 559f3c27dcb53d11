from __future__ import annotations

import threading
from typing import Optional

import numpy as np


class AudioNode:
    """
    Pull-based graph node. Each node has at most one upstream input; rendering
    a node renders its input first. Destinations (the output device) are nodes
    too, so `a.connect(b)` works the same for effects and for the output.
    """

    def __init__(self, channels: int):
        self.channels = channels
        self._input: Optional[AudioNode] = None
        self._outputs: list[AudioNode] = []
        self._graph_lock = threading.RLock()
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def input(self) -> Optional["AudioNode"]:
        return self._input

    def connect(self, dest: "AudioNode") -> "AudioNode":
        if self._disposed:
            raise RuntimeError(f"{type(self).__name__} is disposed")
        dest.attach_input(self)
        self._outputs.append(dest)
        return dest

    def to_destination(self, output: "AudioNode") -> "AudioNode":
        self.connect(output)
        return self

    def disconnect(self) -> None:
        outputs, self._outputs = self._outputs, []
        for dest in outputs:
            dest.detach_input(self)

    def attach_input(self, node: "AudioNode") -> None:
        with self._graph_lock:
            if self._input is not None and self._input is not node:
                raise RuntimeError(
                    f"{type(self).__name__} already has {type(self._input).__name__} connected"
                )
            self._input = node

    def detach_input(self, node: "AudioNode") -> None:
        # Taking the lock waits out a render in progress on the audio thread.
        with self._graph_lock:
            if self._input is node:
                self._input = None

    def pull(self, frames: int) -> np.ndarray:
        with self._graph_lock:
            src = self._input
            if src is None:
                return np.zeros((frames, self.channels), dtype=np.float32)
            return src.render(frames)

    def render(self, frames: int) -> np.ndarray:
        raise NotImplementedError

    def dispose(self) -> None:
        self.disconnect()
        self._disposed = True
