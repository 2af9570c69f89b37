"""
Gateway return flow

Interprets the query string the site is redirected back to after a payment
(`payment`, `booking`, `error`) and drives the post-payment redirect home.
"""
import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Callable, List, Mapping, Optional
from urllib.parse import quote

from app.core.config import settings
from app.core.logging_config import logger

HOME_URL = "/"


@dataclass(frozen=True)
class ReturnAction:
    label: str
    href: str
    primary: bool = False


@dataclass(frozen=True)
class ReturnFlowOutcome:
    """What the return page shows for one query string"""

    status: Optional[str] = None
    booking_id: Optional[str] = None
    error: Optional[str] = None
    redirect_seconds: int = field(default_factory=lambda: settings.RETURN_REDIRECT_SECONDS)

    @property
    def error_text(self) -> Optional[str]:
        """Error code with underscores turned into spaces"""
        return self.error.replace("_", " ") if self.error else None

    @property
    def auto_redirect(self) -> bool:
        return self.status == "success"

    @property
    def title(self) -> str:
        return {
            "success": "Payment Successful!",
            "failed": "Payment Failed",
            "pending": "Payment Pending",
        }.get(self.status or "", "Payment Status Unknown")

    @property
    def message(self) -> str:
        return {
            "success": "Your booking has been confirmed and payment processed successfully.",
            "failed": "Your payment could not be processed. Please try again or contact support.",
            "pending": "Your payment is being processed. Please wait for confirmation.",
        }.get(self.status or "", "Unable to determine payment status.")

    @property
    def badge(self) -> str:
        return self.status.upper() if self.status else "UNKNOWN"

    @property
    def color(self) -> str:
        return {
            "success": "green",
            "failed": "red",
            "pending": "yellow",
        }.get(self.status or "", "gray")

    def actions(self, current_url: str = "") -> List[ReturnAction]:
        """
        Follow-up actions offered on the page

        Args:
            current_url: URL of the page itself, used by "Refresh Status"
        """
        if self.status == "success":
            actions = [ReturnAction("Go to Home Now", HOME_URL, primary=True)]
            if settings.BOOKINGS_URL:
                actions.append(ReturnAction("View My Bookings", settings.BOOKINGS_URL))
            if settings.RECEIPT_URL_TEMPLATE and self.booking_id:
                actions.append(ReturnAction(
                    "Download Receipt",
                    settings.RECEIPT_URL_TEMPLATE.format(booking_id=quote(self.booking_id))
                ))
            return actions
        if self.status == "failed":
            return [
                ReturnAction("Try Again", HOME_URL, primary=True),
                ReturnAction("Contact Support", f"mailto:{settings.SUPPORT_EMAIL}"),
            ]
        if self.status == "pending":
            # Reloads the same query string; the backend decides whether it changes
            return [ReturnAction("Refresh Status", current_url or "", primary=True)]
        return [ReturnAction("Return to Home", HOME_URL, primary=True)]


def parse_return_params(params: Mapping[str, str]) -> ReturnFlowOutcome:
    """Read `payment`, `booking` and `error` independently; any may be absent"""
    return ReturnFlowOutcome(
        status=params.get("payment") or None,
        booking_id=params.get("booking") or None,
        error=params.get("error") or None,
    )


class RedirectCountdown:
    """
    One-shot redirect at a fixed deadline

    The remaining time is derived from the deadline rather than ticked down,
    and a single callback is scheduled for the deadline itself.
    """

    def __init__(
        self,
        navigate: Callable[[str], None],
        seconds: Optional[int] = None,
        target: str = HOME_URL,
        clock: Callable[[], float] = time.monotonic
    ):
        self.navigate = navigate
        self.seconds = settings.RETURN_REDIRECT_SECONDS if seconds is None else seconds
        self.target = target
        self._clock = clock
        self.deadline: Optional[float] = None
        self.navigated = False
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def remaining(self) -> int:
        """Whole seconds left, as shown to the user"""
        if self.deadline is None:
            return self.seconds
        if self.navigated:
            return 0
        return max(0, math.ceil(self.deadline - self._clock()))

    @property
    def progress(self) -> float:
        """Fraction of the wait already elapsed, 0.0 to 1.0"""
        if not self.seconds:
            return 1.0
        return (self.seconds - self.remaining) / self.seconds

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        if self._handle is not None or self.navigated:
            return
        loop = loop or asyncio.get_running_loop()
        self.deadline = self._clock() + self.seconds
        self._handle = loop.call_later(self.seconds, self._fire)

    def go_now(self) -> None:
        """Skip the wait and navigate immediately"""
        self.cancel()
        self._fire()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        if self.navigated:
            return
        self.navigated = True
        logger.debug(f"Return flow redirecting to {self.target}")
        self.navigate(self.target)


class ReturnFlowHandler:
    """Return page state: the parsed outcome plus the success countdown"""

    def __init__(self, params: Mapping[str, str], navigate: Callable[[str], None], seconds: Optional[int] = None):
        self.outcome = parse_return_params(params)
        self.countdown = RedirectCountdown(navigate, seconds=seconds)

    def mount(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        if self.outcome.auto_redirect:
            self.countdown.start(loop)

    def go_home_now(self) -> None:
        self.countdown.go_now()

    def unmount(self) -> None:
        self.countdown.cancel()
