import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, TypeVar

T = TypeVar("T")


class DeadlineExceeded(TimeoutError):
    """The wall-clock budget ran out before the work finished."""


def run_with_deadline(fn: Callable[[], T], timeout: float) -> T:
    """
    Run ``fn`` in a daemon thread and wait at most ``timeout`` seconds for it.

    ``requests`` and ``socket`` timeouts bound each blocking operation, not the
    whole exchange, so a peer that trickles bytes can keep a call alive far
    longer. Work still running at the deadline is abandoned; the daemon thread
    ends on its own once its socket timeout or the peer lets it.
    """
    future: "Future[T]" = Future()

    def target() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn())
        except BaseException as e:
            future.set_exception(e)

    threading.Thread(target=target, name="linkdeck-deadline", daemon=True).start()
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        if not future.done():
            raise DeadlineExceeded(f"no result after {timeout:g} seconds") from None
        # finished right at the deadline, or fn itself raised TimeoutError
        return future.result()
