"""
Compliance orchestration.

ComplianceService ties the verification engine to the store: it gathers store
state, probes unsubscribe links, runs the checks, builds proofs and persists
the resulting state change. Every collaborator (database session, probe,
signer, notifier, settings) is passed in by the caller.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol

from sqlalchemy.orm import Session

from stampbot import storage
from stampbot.config import Settings
from stampbot.metrics import record_broadcast_delivery, record_verification_outcome
from stampbot.probe import Probe, ProbeResult, build_unsubscribe_url
from stampbot.proofs import Proof, ProofKind, Signer, format_proof, generate_proof
from stampbot.utils import generate_token, now_ms, start_of_day_ms
from stampbot.verification import (
    ConsentParams,
    RateLimitParams,
    UnsubscribeParams,
    Verdict,
    verify_consent_chain,
    verify_link_liveness,
    verify_rate_limit,
)

logger = logging.getLogger(__name__)

# The /subscribe call is itself the confirmation of a request made just before
CONSENT_REQUEST_LEAD_MS = 1000

SECRET_FIELDS = {"token", "signature"}

DEMO_SUBJECT = "Weekly STAMP Demo Update"
DEMO_BODY = (
    "This is a demo message from the STAMP protocol bot.\n\n"
    "Notice:\n"
    "- You consented to this (proven)\n"
    "- You can unsubscribe at any time (proven to work)\n"
    "- This sender is rate-limited (proven)\n\n"
    "Ask for verification to see the proof!"
)


class Notifier(Protocol):
    async def send(self, identity: str, text: str) -> None:
        ...


class LoggingNotifier:
    """Delivers messages to the log. Swap for a real channel in production."""

    async def send(self, identity: str, text: str) -> None:
        logger.info("Message delivered", extra={"user_id": identity, "chars": len(text)})


@dataclass
class ActionResult:
    """Outcome of a subscribe or unsubscribe request."""
    status: str
    verdict: Optional[Verdict] = None
    proof: Optional[Proof] = None
    subscriber: Optional[object] = None
    latency_ms: Optional[int] = None


@dataclass
class BroadcastReport:
    attempted: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    halted_by: Optional[Verdict] = None
    message_ids: List[int] = field(default_factory=list)


def _redacted(params) -> Optional[dict]:
    if params is None:
        return None
    return {k: v for k, v in params.model_dump().items() if k not in SECRET_FIELDS}


class ComplianceService:
    """Runs verifications against store state and persists their outcomes."""

    def __init__(
        self,
        db: Session,
        probe: Probe,
        signer: Signer,
        notifier: Notifier,
        settings: Settings,
    ):
        self.db = db
        self.probe = probe
        self.signer = signer
        self.notifier = notifier
        self.settings = settings

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    def _run_check(self, check: str, verifier: Callable[..., Verdict], params, **kwargs) -> Verdict:
        """Run one verifier; faults become INTERNAL and are logged with redacted inputs."""
        try:
            verdict = verifier(params, **kwargs)
        except Exception:
            logger.exception(
                "Verification fault",
                extra={"check": check, "params": _redacted(params)},
            )
            verdict = Verdict.INTERNAL

        record_verification_outcome(check, verdict.name)
        if verdict.ok:
            logger.debug(f"{check} verification passed")
        else:
            logger.warning(
                f"{check} verification failed: {verdict.name}",
                extra={"check": check, "verdict": verdict.name, "params": _redacted(params)},
            )
        return verdict

    async def probe_unsubscribe_link(self, identity: str, token: str) -> UnsubscribeParams:
        """
        Probe a subscriber's unsubscribe link and build the liveness input.

        Probe failures are reported as status 0 so the engine rejects them
        as INVALID_RESPONSE instead of seeing an exception.
        """
        url = build_unsubscribe_url(self.settings.UNSUBSCRIBE_BASE_URL, identity, token)
        try:
            result = await self.probe(url)
        except Exception as e:
            logger.warning(f"Probe failed for {identity}: {e}")
            result = ProbeResult(status_code=0, latency_ms=0)

        return UnsubscribeParams(
            url=url,
            tested_at=now_ms(),
            response_code=result.status_code,
            response_time=result.latency_ms,
            token=token,
            signature=self.signer.sign(url.encode("utf-8")),
        )

    def rate_limit_params(self) -> RateLimitParams:
        """Current sender state: account age and messages sent since UTC midnight."""
        account_created = self.settings.SENDER_ACCOUNT_CREATED
        if account_created is None:
            account_created = storage.get_first_activity(self.db)
        if account_created is None:
            account_created = now_ms()

        return RateLimitParams(
            sender_id=self.settings.SENDER_ID,
            account_created=account_created,
            messages_today=storage.count_messages_since(self.db, start_of_day_ms()),
            daily_limit=self.settings.DAILY_MESSAGE_LIMIT,
        )

    def check_rate_limit(self) -> Verdict:
        return self._run_check("rate_limit", verify_rate_limit, self.rate_limit_params())

    # -------------------------------------------------------------------------
    # Subscription lifecycle
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        identity: str,
        display_name: Optional[str] = None,
        ip_address: str = "unknown",
    ) -> ActionResult:
        """
        Verify a consent chain and store the subscriber with its proof.

        An identity that is already subscribed is left untouched.
        """
        existing = storage.get_subscriber(self.db, identity)
        if existing is not None and existing.subscribed:
            logger.info(f"Subscriber {identity} already subscribed")
            return ActionResult(status="already_subscribed", subscriber=existing)

        confirmation = now_ms()
        params = ConsentParams(
            initial_request=confirmation - CONSENT_REQUEST_LEAD_MS,
            confirmation=confirmation,
            ip_address=ip_address,
            token=generate_token(identity),
        )

        verdict = self._run_check("consent", verify_consent_chain, params)
        if not verdict.ok:
            return ActionResult(status="rejected", verdict=verdict)

        proof = generate_proof(ProofKind.CONSENT, params, self.signer)
        subscriber = storage.subscribe(
            self.db,
            identity=identity,
            display_name=display_name,
            token=params.token,
            proof=format_proof(proof),
        )
        return ActionResult(status="subscribed", verdict=verdict, proof=proof, subscriber=subscriber)

    async def unsubscribe(self, identity: str) -> ActionResult:
        """
        Prove the unsubscribe link works, then remove the subscriber.

        The flag is only cleared once the liveness check passed.
        """
        subscriber = storage.get_subscriber(self.db, identity)
        if subscriber is None or not subscriber.subscribed:
            return ActionResult(status="not_subscribed")

        params = await self.probe_unsubscribe_link(identity, subscriber.consent_token)
        verdict = self._run_check("unsubscribe", verify_link_liveness, params)
        if not verdict.ok:
            return ActionResult(status="rejected", verdict=verdict, latency_ms=params.response_time)

        proof = generate_proof(ProofKind.UNSUBSCRIBE, params, self.signer)
        if not storage.unsubscribe(self.db, identity):
            # Lost a race with a concurrent unsubscribe
            return ActionResult(status="not_subscribed")

        logger.info(f"Subscriber {identity} unsubscribed", extra={"user_id": identity})
        return ActionResult(
            status="unsubscribed",
            verdict=verdict,
            proof=proof,
            subscriber=storage.get_subscriber(self.db, identity),
            latency_ms=params.response_time,
        )

    # -------------------------------------------------------------------------
    # Broadcast
    # -------------------------------------------------------------------------

    async def _deliver(self, identity: str, token: str, subject: str, body: str) -> Optional[int]:
        """Send one message and record it. Returns the message id, None if skipped."""
        params = await self.probe_unsubscribe_link(identity, token)
        verdict = self._run_check("unsubscribe", verify_link_liveness, params)
        if not verdict.ok:
            logger.warning(f"Skipping {identity}: unsubscribe link failed {verdict.name}")
            return None

        proof = generate_proof(ProofKind.UNSUBSCRIBE, params, self.signer)
        text = (
            f"{subject}\n\n{body}\n\n"
            "✓ Verified by STAMP Protocol\n"
            "└─ Consent: Proven\n"
            f"└─ Unsubscribe: Tested in {params.response_time}ms\n"
            "└─ Rate limit: Enforced"
        )
        await self.notifier.send(identity, text)
        return storage.record_message(self.db, identity, subject, body, format_proof(proof))

    async def broadcast(self, subject: str, body: str) -> BroadcastReport:
        """
        Send a message to every active subscriber.

        Each subscriber is an independent unit of work: a failure is logged
        and counted, and the loop moves on. A rate-limit rejection stops the
        remaining sends.
        """
        targets = [(s.identity, s.consent_token) for s in storage.list_subscribed(self.db)]
        report = BroadcastReport()
        logger.info(f"Broadcasting to {len(targets)} subscribers")

        for identity, token in targets:
            verdict = self.check_rate_limit()
            if not verdict.ok:
                report.halted_by = verdict
                logger.warning(f"Broadcast halted: {verdict.name}")
                break

            report.attempted += 1
            try:
                message_id = await self._deliver(identity, token, subject, body)
            except Exception as e:
                logger.error(f"Failed to deliver to {identity}: {e}", extra={"user_id": identity})
                report.failed += 1
                record_broadcast_delivery("failed")
                continue

            if message_id is None:
                report.skipped += 1
                record_broadcast_delivery("skipped")
            else:
                report.sent += 1
                report.message_ids.append(message_id)
                record_broadcast_delivery("sent")

        logger.info(
            f"Broadcast finished: {report.sent} sent, {report.skipped} skipped, {report.failed} failed"
        )
        return report
