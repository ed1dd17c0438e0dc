"""Single-flight guard for cooperative (asyncio) code."""


class SingleFlight:
    """At most one holder at a time, acquired without awaiting.

    ``try_acquire`` is synchronous: check and set happen in the same step
    of the event loop, so a caller that acquires before its first ``await``
    is guaranteed that no other coroutine can acquire until ``release``.
    Acquiring after an ``await`` gives no such guarantee.
    """

    __slots__ = ("_held",)

    def __init__(self) -> None:
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        """Take the guard if free. Returns False if already held."""
        if self._held:
            return False
        self._held = True
        return True

    def release(self) -> None:
        self._held = False
