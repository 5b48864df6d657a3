"""
Unsubscribe link probing.

The orchestrator calls a Probe right before it relies on an unsubscribe link.
Network transport is not part of this service: the shipped SimulatedProbe
answers the way a healthy endpoint would, and real transports can be injected
in its place.
"""

import asyncio
import logging
import random
import time
from typing import Protocol
from urllib.parse import urlencode

from pydantic import BaseModel, Field

from stampbot.verification import SECURE_SCHEME_PREFIX

logger = logging.getLogger(__name__)


class ProbeResult(BaseModel):
    """Outcome of a single probe. status_code 0 means the probe itself failed."""
    status_code: int = Field(..., ge=0)
    latency_ms: int = Field(..., ge=0)


class Probe(Protocol):
    async def __call__(self, url: str) -> ProbeResult:
        ...


class SimulatedProbe:
    """
    Stand-in for an HTTP check of an unsubscribe link.

    Secure URLs answer 200 and anything else 404, after a simulated network
    delay of min_delay_ms plus up to jitter_ms.
    """

    def __init__(self, min_delay_ms: int = 50, jitter_ms: int = 100):
        self.min_delay_ms = min_delay_ms
        self.jitter_ms = jitter_ms

    async def __call__(self, url: str) -> ProbeResult:
        start = time.monotonic()
        delay_ms = self.min_delay_ms + random.random() * self.jitter_ms
        await asyncio.sleep(delay_ms / 1000)
        latency_ms = int((time.monotonic() - start) * 1000)

        status_code = 200 if url.startswith(SECURE_SCHEME_PREFIX) else 404
        logger.debug(f"Simulated probe: status={status_code}, latency_ms={latency_ms}")
        return ProbeResult(status_code=status_code, latency_ms=latency_ms)


def build_unsubscribe_url(base_url: str, identity: str, token: str) -> str:
    """One-click unsubscribe link for a subscriber."""
    query = urlencode({"user": identity, "token": token})
    return f"{base_url.rstrip('/')}/unsubscribe?{query}"
