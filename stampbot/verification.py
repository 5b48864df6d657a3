"""
Verification engine for outbound messaging compliance.

Three independent checks, each a pure function of one immutable input record:

- verify_link_liveness: the unsubscribe link was probed recently and answered
- verify_consent_chain: the double opt-in request/confirmation pair is valid
- verify_rate_limit: the sender is inside the cap allowed by its trust tier

No function here performs I/O. Checks that compare against "now" take it as a
keyword argument and only fall back to the wall clock when it is omitted.
"""

from enum import Enum, IntEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from stampbot.utils import MS_PER_DAY, now_ms


# =============================================================================
# Constants
# =============================================================================

SECURE_SCHEME_PREFIX = "https://"

# Link probe must be this fresh and this fast
PROBE_MAX_AGE_MS = 60_000
PROBE_MAX_LATENCY_MS = 200

# Confirmation must follow the initial request within 24 hours
CONSENT_WINDOW_MS = 86_400_000

# (minimum account age in days, maximum daily cap), highest tier first
TRUST_TIERS = (
    (90, 100_000),
    (30, 10_000),
    (0, 1_000),
)


# =============================================================================
# Verdicts
# =============================================================================

class VerdictCategory(str, Enum):
    """How a caller should treat a failed verdict."""
    NONE = "none"
    INPUT_REJECTION = "input_rejection"
    TRANSIENT = "transient"
    POLICY = "policy"
    INTERNAL = "internal"


class Verdict(IntEnum):
    """Outcome of a single verification. Codes match the STAMP library."""
    SUCCESS = 0
    INVALID_URL = -1
    TIMEOUT = -2
    INVALID_RESPONSE = -3
    INVALID_SIGNATURE = -4
    RATE_LIMIT_EXCEEDED = -5
    CONSENT_INVALID = -6
    NULL_POINTER = -7
    INTERNAL = -99

    @property
    def ok(self) -> bool:
        return self is Verdict.SUCCESS

    @property
    def category(self) -> VerdictCategory:
        return _CATEGORIES[self]

    @property
    def retryable(self) -> bool:
        return self in (Verdict.TIMEOUT, Verdict.INVALID_RESPONSE, Verdict.INTERNAL)

    @property
    def label(self) -> str:
        """Human-readable rendering, e.g. '✓ SUCCESS' or '✗ TIMEOUT'."""
        if self is Verdict.SUCCESS:
            return "✓ SUCCESS"
        if self is Verdict.INTERNAL:
            return "✗ INTERNAL_ERROR"
        return f"✗ {self.name}"


_CATEGORIES = {
    Verdict.SUCCESS: VerdictCategory.NONE,
    Verdict.INVALID_URL: VerdictCategory.INPUT_REJECTION,
    Verdict.TIMEOUT: VerdictCategory.TRANSIENT,
    Verdict.INVALID_RESPONSE: VerdictCategory.TRANSIENT,
    Verdict.INVALID_SIGNATURE: VerdictCategory.INPUT_REJECTION,
    Verdict.RATE_LIMIT_EXCEEDED: VerdictCategory.POLICY,
    Verdict.CONSENT_INVALID: VerdictCategory.INPUT_REJECTION,
    Verdict.NULL_POINTER: VerdictCategory.INTERNAL,
    Verdict.INTERNAL: VerdictCategory.INTERNAL,
}


# =============================================================================
# Verification Inputs
# =============================================================================

class UnsubscribeParams(BaseModel):
    """Result of probing an unsubscribe link, plus the credentials bound to it."""
    model_config = ConfigDict(frozen=True)

    url: str = Field(..., description="Unsubscribe URL that was probed")
    tested_at: int = Field(..., description="Probe time, epoch ms")
    response_code: int = Field(..., description="HTTP status returned by the probe")
    response_time: int = Field(..., description="Probe latency in ms")
    token: str = Field(..., description="Consent token bound to the link")
    signature: str = Field(..., description="Signature over the link")


class ConsentParams(BaseModel):
    """A double opt-in consent chain."""
    model_config = ConfigDict(frozen=True)

    initial_request: int = Field(..., description="Subscription request time, epoch ms")
    confirmation: int = Field(..., description="Confirmation time, epoch ms")
    ip_address: str = Field(..., description="Originating address, opaque")
    token: str = Field(..., description="Consent token issued for this chain")


class RateLimitParams(BaseModel):
    """Sender state for the trust-tiered rate limit."""
    model_config = ConfigDict(frozen=True)

    sender_id: str = Field(..., description="Sender identity")
    account_created: int = Field(..., description="Sender account creation, epoch ms")
    messages_today: int = Field(..., ge=0, description="Messages already sent today")
    daily_limit: int = Field(..., description="Configured daily cap")


# =============================================================================
# Verifiers
# =============================================================================

def verify_link_liveness(params: Optional[UnsubscribeParams], now: Optional[int] = None) -> Verdict:
    """
    Verify that an unsubscribe link is live.

    Checks run cheapest first and stop at the first failure:
    secure scheme, probe freshness, HTTP status, latency, signature.
    """
    if params is None:
        return Verdict.NULL_POINTER

    if not params.url.startswith(SECURE_SCHEME_PREFIX):
        return Verdict.INVALID_URL

    if now is None:
        now = now_ms()
    age_ms = now - params.tested_at
    if age_ms < 0 or age_ms > PROBE_MAX_AGE_MS:
        return Verdict.TIMEOUT

    if params.response_code != 200:
        return Verdict.INVALID_RESPONSE

    if params.response_time >= PROBE_MAX_LATENCY_MS:
        return Verdict.TIMEOUT

    if not params.signature:
        return Verdict.INVALID_SIGNATURE

    return Verdict.SUCCESS


def verify_consent_chain(params: Optional[ConsentParams]) -> Verdict:
    """
    Verify a double opt-in consent chain.

    The confirmation must strictly follow the request and arrive within
    CONSENT_WINDOW_MS of it; the token must be present.
    """
    if params is None:
        return Verdict.NULL_POINTER

    if params.confirmation <= params.initial_request:
        return Verdict.CONSENT_INVALID

    if params.confirmation - params.initial_request > CONSENT_WINDOW_MS:
        return Verdict.CONSENT_INVALID

    if not params.token:
        return Verdict.INVALID_SIGNATURE

    return Verdict.SUCCESS


def tier_ceiling(age_days: float) -> int:
    """Maximum daily cap permitted for an account of the given age."""
    for min_age_days, ceiling in TRUST_TIERS:
        if age_days >= min_age_days:
            return ceiling
    # Clock skew can make a brand-new account look younger than zero days
    return TRUST_TIERS[-1][1]


def verify_rate_limit(params: Optional[RateLimitParams], now: Optional[int] = None) -> Verdict:
    """
    Verify that the sender is within its trust-tiered rate limit.

    A sender cannot configure a daily cap above the ceiling of its tier.
    A cap equal to the ceiling is allowed.
    """
    if params is None:
        return Verdict.NULL_POINTER

    if params.messages_today >= params.daily_limit:
        return Verdict.RATE_LIMIT_EXCEEDED

    if now is None:
        now = now_ms()
    age_days = (now - params.account_created) / MS_PER_DAY

    if params.daily_limit > tier_ceiling(age_days):
        return Verdict.RATE_LIMIT_EXCEEDED

    return Verdict.SUCCESS
