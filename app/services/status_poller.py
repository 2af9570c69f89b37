"""
Payment status poller

Watches one payment until it settles. Tracking is opt-in: nothing is
queried until start() is called, after which the status endpoint is hit
immediately and then once per interval. A tick that finds the previous
query still running is skipped. Completed and failed are terminal;
observing either stops the poller.
"""
import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from app.core.config import settings
from app.core.logging_config import logger
from app.schemas.payment import PaymentRecord, is_terminal
from app.services.payment_client import PaymentApiClient, PaymentStatusQueryError

StatusCallback = Callable[[str], Union[None, Awaitable[None]]]


class PaymentStatusPoller:
    """Periodic status tracker for a single payment"""

    def __init__(
        self,
        api: PaymentApiClient,
        payment_id: Optional[int] = None,
        pidx: Optional[str] = None,
        on_status_change: Optional[StatusCallback] = None,
        interval: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        """
        Args:
            api: Client used for status queries
            payment_id: Backend payment ID (preferred when both identifiers are given)
            pidx: Khalti transaction reference
            on_status_change: Called once per distinct status transition
            interval: Seconds between queries, defaults to PAYMENT_POLL_INTERVAL
            sleep: Awaitable sleep used between ticks
        """
        if payment_id is None and not pidx:
            raise ValueError("No payment to track")

        self.api = api
        self.identifier: Union[int, str] = payment_id if payment_id is not None else pidx
        self.on_status_change = on_status_change
        self.interval = settings.PAYMENT_POLL_INTERVAL if interval is None else interval
        self._sleep = sleep

        self.payment: Optional[PaymentRecord] = None
        self.last_status: Optional[str] = None
        self.query_count = 0

        self._tracking = False
        self._timer_task: Optional[asyncio.Task] = None
        self._query_task: Optional[asyncio.Task] = None
        self._generation = 0

    @property
    def is_tracking(self) -> bool:
        return self._tracking

    @property
    def is_loading(self) -> bool:
        return self.payment is None and self._query_task is not None and not self._query_task.done()

    def start(self) -> None:
        """Enable tracking; the first query is issued right away"""
        if self._tracking:
            return
        self._tracking = True
        logger.info(f"Tracking payment {self.identifier} every {self.interval}s")
        self._timer_task = asyncio.create_task(self._run())

    def stop(self) -> None:
        """Disable tracking and cancel the periodic timer and any in-flight query"""
        was_tracking = self._tracking
        self._tracking = False

        current = asyncio.current_task()
        if self._timer_task is not None and not self._timer_task.done() and self._timer_task is not current:
            self._timer_task.cancel()
        if self._query_task is not None and not self._query_task.done() and self._query_task is not current:
            self._query_task.cancel()

        if was_tracking:
            logger.info(f"Stopped tracking payment {self.identifier}")

    def toggle(self) -> bool:
        """Flip tracking on or off, returning the new state"""
        if self._tracking:
            self.stop()
        else:
            self.start()
        return self._tracking

    async def refresh(self) -> Optional[PaymentRecord]:
        """Query out of band, superseding any query still in flight"""
        task = self._dispatch_query()
        await asyncio.wait({task})
        return self.payment

    async def wait(self) -> None:
        """Wait until the periodic timer has finished"""
        if self._timer_task is not None:
            await asyncio.wait({self._timer_task})

    async def _run(self) -> None:
        while self._tracking:
            if self._query_task is not None and not self._query_task.done():
                # Previous query is still running; wait for the next tick
                logger.debug(f"Status query for payment {self.identifier} still in flight, skipping tick")
            else:
                self._dispatch_query()
            await self._sleep(self.interval)

    def _dispatch_query(self) -> asyncio.Task:
        # A newer query supersedes the one still in flight
        previous = self._query_task
        if previous is not None and not previous.done():
            previous.cancel()
            logger.debug(f"Superseded in-flight status query for payment {self.identifier}")

        self._generation += 1
        self.query_count += 1
        self._query_task = asyncio.create_task(self._query(self._generation))
        return self._query_task

    async def _query(self, generation: int) -> None:
        try:
            payment = await self.api.fetch_payment_status(self.identifier)
        except PaymentStatusQueryError as e:
            # No data for this tick; keep the last known status and keep polling
            logger.debug(f"Status query failed: {str(e)}")
            return

        if generation != self._generation:
            return
        # Result is in; later ticks must not cancel the notification
        self._query_task = None
        await self._apply(payment)

    async def _apply(self, payment: PaymentRecord) -> None:
        status = payment.status

        if is_terminal(self.last_status) and status != self.last_status:
            logger.warning(
                f"Ignoring status '{status}' for payment {self.identifier}: already settled as '{self.last_status}'"
            )
            if self._tracking:
                self.stop()
            return

        self.payment = payment
        if is_terminal(status) and self._tracking:
            logger.info(f"Payment {self.identifier} reached terminal status '{status}'")
            self.stop()

        if status != self.last_status:
            self.last_status = status
            await self._notify(status)

    async def _notify(self, status: str) -> None:
        if self.on_status_change is None:
            return
        try:
            result = self.on_status_change(status)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            # Don't stop tracking if a listener fails
            logger.error(f"Status change listener failed for payment {self.identifier}: {str(e)}", exc_info=True)
