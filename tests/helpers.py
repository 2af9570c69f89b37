"""
Test doubles for outbound HTTP and the payment API
"""
import asyncio
from collections import deque

import requests

from app.schemas.payment import PaymentRecord
from app.services.payment_client import PaymentStatusQueryError


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text=""):
        self.status_code = status_code
        self._json_data = json_data
        self.text = text

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._json_data is None:
            raise ValueError("No JSON body")
        return self._json_data


class FakeSession:
    """Stands in for requests.Session; replays queued responses or exceptions"""

    def __init__(self, *responses):
        self.responses = deque(responses)
        self.calls = []
        self.closed = False

    def queue(self, *responses):
        self.responses.extend(responses)

    def _next(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        if not self.responses:
            raise requests.ConnectionError("no response queued")
        response = self.responses.popleft()
        if isinstance(response, Exception):
            raise response
        return response

    def post(self, url, **kwargs):
        return self._next("POST", url, **kwargs)

    def get(self, url, **kwargs):
        return self._next("GET", url, **kwargs)

    def close(self):
        self.closed = True


def make_record(status, payment_id=7, **overrides):
    data = {
        "id": payment_id,
        "pidx": "bZQLD9wRVWo4CdESSfuSsB",
        "status": status,
        "amount": 250000,
        "customer_name": "Sita Sharma",
        "customer_email": "sita@example.com",
        "booking_id": 42,
    }
    data.update(overrides)
    return PaymentRecord(**data)


class ScriptedApi:
    """
    Async status API replaying a script of statuses

    Entries are status strings, PaymentStatusQueryError instances, or
    asyncio.Event objects paired with a status as (event, status) to make a
    query hang until the event is set.
    """

    def __init__(self, *script, repeat_last=True):
        self.script = list(script)
        self.repeat_last = repeat_last
        self.calls = 0
        self.cancelled = 0
        self.observed = []
        self.poller = None

    async def fetch_payment_status(self, identifier):
        self.calls += 1
        if self.poller is not None:
            self.observed.append((self.poller.last_status, self.poller.payment))

        if self.script:
            entry = self.script.pop(0) if (len(self.script) > 1 or not self.repeat_last) else self.script[0]
        else:
            raise PaymentStatusQueryError("script exhausted")

        if isinstance(entry, Exception):
            raise entry
        if isinstance(entry, tuple):
            event, status = entry
            try:
                await event.wait()
            except asyncio.CancelledError:
                self.cancelled += 1
                raise
            return make_record(status)
        return make_record(entry)
