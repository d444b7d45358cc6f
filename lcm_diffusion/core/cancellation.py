import threading
from typing import Optional

from .errors import OperationCancelledError


class CancellationToken:
    """
    Cooperative cancellation flag shared between a caller and a running loop.

    The loop polls the token once per iteration boundary; any thread may call
    ``cancel``.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        """Request cancellation."""
        self._event.set()

    @property
    def is_cancellation_requested(self) -> bool:
        return self._event.is_set()

    def raise_if_cancellation_requested(self, step_index: Optional[int] = None,
                                        timestep: Optional[int] = None):
        if self._event.is_set():
            raise OperationCancelledError("Operation cancelled", step_index, timestep)
