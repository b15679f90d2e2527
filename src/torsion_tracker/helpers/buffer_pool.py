import numpy as np


class BufferPool:
    """
    Per-pipeline scratch buffers keyed by (name, shape, dtype).
    Not shared between threads: every pipeline owns its own pool.
    Buffers handed out here must never escape into results returned to callers.
    """
    def __init__(self):
        self._buffers: dict[tuple, np.ndarray] = {}

    def get(self, name: str, shape: tuple[int, ...], dtype=np.float32) -> np.ndarray:
        key = (name, tuple(shape), np.dtype(dtype).str)
        buf = self._buffers.get(key)
        if buf is None:
            # drop stale buffers of the same name (frame size changed)
            for k in [k for k in self._buffers if k[0] == name]:
                del self._buffers[k]
            buf = np.empty(shape, dtype=dtype)
            self._buffers[key] = buf
        return buf

    def clear(self):
        self._buffers.clear()

    def __len__(self):
        return len(self._buffers)
