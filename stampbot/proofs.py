"""
Proof artifacts for verification verdicts.

A proof binds the inputs of a verification to the time it was generated and a
signature. Proofs are stored as pretty-printed JSON on subscriber and message
rows and shown to users as-is, so the text format has a stable key order:

    {"kind": ..., "data": {...}, "timestamp": ..., "signature": ...}
"""

import json
import logging
import secrets
from enum import Enum
from typing import Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, field_validator

from stampbot.utils import compute_hmac_signature, now_ms, verify_hmac_signature
from stampbot.verification import ConsentParams, RateLimitParams, UnsubscribeParams

logger = logging.getLogger(__name__)


class ProofKind(str, Enum):
    UNSUBSCRIBE = "unsubscribe_verification"
    CONSENT = "consent_verification"
    RATE_LIMIT = "rate_limit_verification"


VerificationParams = Union[UnsubscribeParams, ConsentParams, RateLimitParams]

PARAMS_BY_KIND = {
    ProofKind.UNSUBSCRIBE: UnsubscribeParams,
    ProofKind.CONSENT: ConsentParams,
    ProofKind.RATE_LIMIT: RateLimitParams,
}


class Proof(BaseModel):
    """Signed snapshot of one verification's inputs."""
    model_config = ConfigDict(frozen=True)

    kind: ProofKind
    data: VerificationParams
    timestamp: int
    signature: str

    @field_validator("data", mode="before")
    @classmethod
    def snapshot_matches_kind(cls, v, info):
        """Select the input variant from kind and always hold a private copy."""
        kind = info.data.get("kind")
        if kind is None:
            raise ValueError("proof kind is missing or invalid")
        model = PARAMS_BY_KIND[kind]
        if isinstance(v, BaseModel):
            if not isinstance(v, model):
                raise ValueError(f"{type(v).__name__} does not match proof kind {kind.value}")
            v = v.model_dump()
        return model.model_validate(v)


# =============================================================================
# Signing
# =============================================================================

class Signer(Protocol):
    def sign(self, payload: bytes) -> str:
        ...


class HmacSigner:
    """
    Signs proof payloads with HMAC-SHA256.

    The returned signature is "{nonce}.{hexdigest}" so two proofs over the
    same inputs never share a signature, while the payload stays verifiable.
    """

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._secret = secret

    def sign(self, payload: bytes) -> str:
        nonce = secrets.token_hex(8)
        digest = compute_hmac_signature(nonce.encode("utf-8") + b"." + payload, self._secret)
        return f"{nonce}.{digest}"

    def verify(self, payload: bytes, signature: str) -> bool:
        nonce, sep, digest = signature.partition(".")
        if not sep or not nonce or not digest:
            return False
        return verify_hmac_signature(nonce.encode("utf-8") + b"." + payload, digest, self._secret)


def _signing_payload(kind: ProofKind, data: BaseModel, timestamp: int) -> bytes:
    canonical = json.dumps(data.model_dump(), sort_keys=True, separators=(",", ":"))
    return f"{kind.value}:{timestamp}:{canonical}".encode("utf-8")


# =============================================================================
# Codec
# =============================================================================

def generate_proof(kind: ProofKind, params: VerificationParams, signer: Signer) -> Proof:
    """
    Build a proof for a verification that has already passed.

    Args:
        kind: Which verification the proof records
        params: The verification input; copied, never referenced
        signer: Capability producing the signature

    Returns:
        Proof stamped with the current time
    """
    kind = ProofKind(kind)
    timestamp = now_ms()
    signature = signer.sign(_signing_payload(kind, params, timestamp))
    proof = Proof(kind=kind, data=params, timestamp=timestamp, signature=signature)
    logger.debug(f"Generated {kind.value} proof at {timestamp}")
    return proof


def verify_proof(proof: Proof, signer: HmacSigner) -> bool:
    """Check a proof's signature against its kind, timestamp and data."""
    return signer.verify(_signing_payload(proof.kind, proof.data, proof.timestamp), proof.signature)


def format_proof(proof: Proof) -> str:
    """Pretty JSON with a stable key order, used for storage and display."""
    return proof.model_dump_json(indent=2)


def parse_proof(text: str) -> Proof:
    """Parse text produced by format_proof. Raises pydantic.ValidationError."""
    return Proof.model_validate_json(text)


def try_parse_proof(text: Optional[str]) -> Optional[Proof]:
    """Like parse_proof, but logs and returns None for unreadable stored proofs."""
    if not text:
        return None
    try:
        return parse_proof(text)
    except ValueError as e:
        logger.warning(f"Stored proof could not be parsed: {e}")
        return None
