"""Request-scoped tensor tracking.

Every buffer allocated while classifying one image is wrapped in a
:class:`Tensor` and registered with a :class:`TensorScope`. Leaving the
scope disposes each tracked tensor exactly once, whatever the exit path.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from types import TracebackType

    import numpy as np
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class Tensor:
    """A numpy buffer with explicit, idempotent disposal."""

    __slots__ = ("_data", "name", "shape", "dtype")

    def __init__(self, data: NDArray[np.generic], name: str = "") -> None:
        self._data: NDArray[np.generic] | None = data
        self.name = name
        self.shape: tuple[int, ...] = tuple(data.shape)
        self.dtype = data.dtype

    @property
    def data(self) -> NDArray[np.generic]:
        if self._data is None:
            raise RuntimeError(f"Tensor '{self.name}' has been disposed")
        return self._data

    @property
    def is_disposed(self) -> bool:
        return self._data is None

    def dispose(self) -> bool:
        """Drop the buffer. Returns False if it was already disposed."""
        if self._data is None:
            return False
        self._data = None
        return True

    def __repr__(self) -> str:
        state = "disposed" if self.is_disposed else "live"
        return f"Tensor(name={self.name!r}, shape={self.shape}, dtype={self.dtype}, {state})"


class TensorScope:
    """Collects tensors for one request and releases them together."""

    def __init__(self) -> None:
        self._tensors: list[Tensor] = []
        self.allocated: int = 0
        self.released: int = 0

    def track(self, data: NDArray[np.generic], name: str = "") -> Tensor:
        """Wrap ``data`` in a tensor owned by this scope."""
        tensor = Tensor(data, name=name)
        self._tensors.append(tensor)
        self.allocated += 1
        return tensor

    @property
    def live_count(self) -> int:
        return sum(1 for t in self._tensors if not t.is_disposed)

    def release(self) -> None:
        """Dispose every tracked tensor that is still live."""
        for tensor in self._tensors:
            if tensor.dispose():
                self.released += 1
        logger.debug("Released %d/%d tensors", self.released, self.allocated)
        self._tensors.clear()

    def __enter__(self) -> TensorScope:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
