"""Single-flight refresh of an expired access credential.

Any number of requests may discover at the same moment that their access
token was rejected. :class:`RefreshCoordinator` guarantees that exactly one
refresh call goes out for them: the first caller starts it, later callers
await the same task, and all of them observe the same outcome.

``generation`` counts successful refreshes (and logins). A caller records the
generation before sending its request; if the generation has moved on by the
time its 401 comes back, someone else already refreshed and the caller just
replays without refreshing again.

A failed refresh is terminal. The coordinator latches into the expired state,
clears local credentials through ``on_failure`` and raises
:class:`SessionExpiredError` for every waiter and every later caller until
:meth:`reset` is called after a fresh login.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from tenantauth.logging import get_logger
from tenantauth.service.errors import SessionExpiredError

logger = get_logger(__name__)

DEFAULT_REFRESH_TIMEOUT_SECONDS = 10.0


class RefreshCoordinator:
    def __init__(
        self,
        refresh_operation: Callable[[], Awaitable[bool]],
        *,
        timeout: float = DEFAULT_REFRESH_TIMEOUT_SECONDS,
        on_failure: Optional[Callable[[], None]] = None,
    ) -> None:
        self._refresh_operation = refresh_operation
        self.timeout = timeout
        self._on_failure = on_failure
        self._lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Task] = None
        self._expired = False
        self.generation = 0
        self.refresh_count = 0

    @property
    def is_refreshing(self) -> bool:
        return self._inflight is not None

    @property
    def expired(self) -> bool:
        return self._expired

    def reset(self) -> None:
        """Forget a previous failure; call after new credentials were obtained."""
        self._expired = False
        self.generation += 1

    async def refresh(self, observed_generation: int) -> int:
        """Make sure credentials newer than ``observed_generation`` exist.

        Returns the generation to replay with, or raises SessionExpiredError.
        """
        async with self._lock:
            if self._expired:
                raise SessionExpiredError()
            if self._inflight is None:
                if observed_generation < self.generation:
                    return self.generation
                self._inflight = asyncio.get_running_loop().create_task(self._run())
            task = self._inflight
        # Shielded so one waiter being cancelled cannot abort the shared refresh.
        return await asyncio.shield(task)

    async def _run(self) -> int:
        self.refresh_count += 1
        try:
            try:
                succeeded = await asyncio.wait_for(self._refresh_operation(), self.timeout)
            except asyncio.TimeoutError as exc:
                logger.warning("session_refresh_timed_out", timeout=self.timeout)
                raise SessionExpiredError("session refresh timed out") from exc
            except SessionExpiredError:
                raise
            except Exception as exc:
                logger.warning(
                    "session_refresh_errored", error_type=type(exc).__name__, error=str(exc)
                )
                raise SessionExpiredError() from exc
            if not succeeded:
                logger.info("session_refresh_rejected")
                raise SessionExpiredError()
            self.generation += 1
            logger.info("session_refreshed", generation=self.generation)
            return self.generation
        except SessionExpiredError:
            self._expired = True
            if self._on_failure is not None:
                self._on_failure()
            raise
        finally:
            self._inflight = None
