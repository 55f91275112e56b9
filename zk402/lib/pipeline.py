"""
ZK-402 verification pipeline.

An inbound request moves through these gates, each terminal on failure:

    AWAITING_PAYMENT   no X-Payment          -> 402 with payment requirements
    AWAITING_PROOF     no X-ZK-Proof         -> 400 MissingProof
    CHECKING_STRUCTURE undecodable/incomplete -> 400 MalformedPayment/MalformedProof
    CHECKING_BINDING   binding != payment    -> 403 BindingMismatch
    CHECKING_VERIFIER  cosigner says no      -> 403 VerifierRejected
                       cosigner unreachable  -> 503 VerifierUnreachable
    SETTLING           transfer submitted; failure reported, decision kept
    ACCEPTED / REJECTED

The binding gate runs before the cosigner is contacted: a tampered payment
is cheap to catch locally. Verifier outage is fail-closed.

The pipeline keeps no per-request state on the instance, so one instance
serves concurrent requests. Events carry the caller's request_id.
"""
import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import ValidationError

from ..models.common import (
    EventStatus,
    PaymentEnvelope,
    PaymentParameters,
    PaymentRequirements,
    VerifierResult,
    ZkProofEnvelope,
)
from ..services.settlement import SettlementResult, SettlementStatus, Settler
from .binding import proof_hash, verify_payment_binding
from .errors import (
    BindingMismatch,
    GateRejection,
    MalformedPayment,
    MalformedProof,
    MissingProof,
    VerifierRejected,
    VerifierUnreachable,
)
from .events import EventBus, EventStep
from .signing import eip712_domain, recover_authorization_signer
from .verifier import NonceLedger, VerifierBridge

logger = logging.getLogger("pipeline")


class PipelineState(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    AWAITING_PROOF = "awaiting_proof"
    CHECKING_STRUCTURE = "checking_structure"
    CHECKING_BINDING = "checking_binding"
    CHECKING_VERIFIER = "checking_verifier"
    SETTLING = "settling"
    PAYMENT_REQUIRED = "payment_required"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass
class PipelineOutcome:
    state: PipelineState
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    error: Optional[GateRejection] = None
    rejected_at: Optional[PipelineState] = None
    payment: Optional[PaymentEnvelope] = None
    proof: Optional[ZkProofEnvelope] = None
    payment_params: Optional[PaymentParameters] = None
    verifier_result: Optional[VerifierResult] = None
    settlement: Optional[SettlementResult] = None

    @property
    def accepted(self) -> bool:
        return self.state == PipelineState.ACCEPTED


def encode_header(data: dict) -> str:
    """base64(JSON) encoding used by X-Payment and X-ZK-Proof."""
    return base64.b64encode(json.dumps(data).encode("utf-8")).decode("ascii")


def decode_header(value: str) -> dict:
    """Inverse of encode_header; raises ValueError on anything else."""
    try:
        raw = base64.b64decode(value, validate=True)
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(str(e)) from e
    if not isinstance(data, dict):
        raise ValueError("header JSON is not an object")
    return data


class VerificationPipeline:
    def __init__(
        self,
        pricing: PaymentParameters,
        network: str,
        verifier: VerifierBridge,
        events: EventBus,
        settler: Optional[Settler] = None,
        nonces: Optional[NonceLedger] = None,
        token_domain: Optional[dict] = None,
    ):
        self.pricing = pricing
        self.network = network
        self.verifier = verifier
        self.events = events
        self.settler = settler
        self.nonces = nonces if nonces is not None else NonceLedger()
        # EIP-712 domain the payer signs transfer authorizations under
        self.token_domain = token_domain or eip712_domain(pricing.chain_id, pricing.token)

    def requirements(self, resource: str) -> PaymentRequirements:
        return PaymentRequirements(
            network=self.network,
            max_amount_required=str(self.pricing.amount),
            resource=resource,
            pay_to=self.pricing.pay_to,
            asset=self.pricing.token,
        )

    def _emit(self, request_id, step, title, description, actor, status, details=None):
        self.events.emit(step, title, description, actor, status, details, request_id)

    async def run(
        self,
        payment_header: Optional[str],
        proof_header: Optional[str],
        resource: str,
        defer_completion: bool = False,
        request_id: Optional[str] = None,
    ) -> PipelineOutcome:
        """
        Run every gate for one request.

        With defer_completion the pipeline neither settles nor emits its
        terminal verify_completed event; the orchestrator does both.
        """
        # Gate: payment attached?
        if not payment_header:
            return self._payment_required(resource, request_id)

        outcome = PipelineOutcome(state=PipelineState.AWAITING_PROOF, status_code=0)
        try:
            # Gate: proof attached?
            if not proof_header:
                raise MissingProof()

            outcome.state = PipelineState.CHECKING_STRUCTURE
            payment, proof = self._decode(payment_header, proof_header)
            outcome.payment, outcome.proof = payment, proof

            self._emit(
                request_id, EventStep.VERIFY_STARTED, "Verification Started",
                "Server received payment + ZK proof, starting verification pipeline.",
                "Server", EventStatus.PENDING,
                {"paymentSize": len(payment_header), "proofSize": len(proof_header)},
            )
            self._emit(
                request_id, EventStep.PROOF_RECEIVED, "ZK Proof Received",
                f"Received zkML proof ({len(proof_header)} bytes), decision: {proof.decision.value}",
                "Server", EventStatus.PENDING,
                {
                    "proofSize": len(proof_header),
                    "decision": proof.decision.value,
                    "model_hash": proof.model_hash,
                    "hasBinding": proof.payment_binding is not None,
                },
            )

            outcome.state = PipelineState.CHECKING_BINDING
            outcome.payment_params = self._check_binding(payment, proof, request_id)

            outcome.state = PipelineState.CHECKING_VERIFIER
            outcome.verifier_result = await self._check_verifier(payment, proof, request_id)

        except GateRejection as e:
            return self._reject(outcome, e, defer_completion, request_id)

        if not defer_completion:
            outcome.settlement = await self.settle(outcome, request_id)
            self._emit(
                request_id, EventStep.VERIFY_COMPLETED, "Verification Complete",
                "Payment and ZK proof verified. Serving protected resource.",
                "Server", EventStatus.SUCCESS,
                {"txHash": outcome.settlement.tx_hash} if outcome.settlement and outcome.settlement.tx_hash else None,
            )

        outcome.state = PipelineState.ACCEPTED
        outcome.status_code = 200
        logger.info(f"Accepted payment of {payment.amount} to {payment.pay_to}")
        return outcome

    async def settle(self, outcome: PipelineOutcome, request_id: Optional[str] = None) -> Optional[SettlementResult]:
        """
        Settle an accepted payment, reporting progress as events.

        Returns None when no settler is configured. A failed settlement is
        reported on the result and never changes the verification decision.
        """
        if self.settler is None or outcome.payment is None:
            return None

        previous = outcome.state
        outcome.state = PipelineState.SETTLING
        payment = outcome.payment
        self._emit(
            request_id, EventStep.SETTLEMENT_PENDING, "Settling payment",
            f"Submitting transferWithAuthorization for {payment.amount} token units.",
            "Chain", EventStatus.INFO,
        )
        result = await self.settler.settle(payment)
        if result.status == SettlementStatus.SUCCESS:
            self._emit(
                request_id, EventStep.SETTLEMENT_COMPLETED, "x402 USDT0 Settlement",
                f"{payment.amount} token units settled via transferWithAuthorization.",
                "Chain", EventStatus.SUCCESS, result.to_dict(),
            )
        else:
            self._emit(
                request_id, EventStep.SETTLEMENT_COMPLETED, "Settlement Failed",
                f"x402 settlement failed: {result.error}",
                "Chain", EventStatus.FAILURE, {"error": result.error},
            )
        outcome.state = previous
        return result

    # --- gates ---

    def _payment_required(self, resource: str, request_id: Optional[str]) -> PipelineOutcome:
        req = self.requirements(resource)
        self._emit(
            request_id, EventStep.PAYMENT_REQUIRED, "Payment Required",
            f"Server requires {self.pricing.amount} units of {self.pricing.token}",
            "Server", EventStatus.INFO,
            {
                "amount": self.pricing.amount,
                "payTo": self.pricing.pay_to,
                "chainId": self.pricing.chain_id,
                "token": self.pricing.token,
                "network": self.network,
            },
        )
        body = {
            "error": "Payment Required",
            "x402": {"version": 1, "accepts": [req.model_dump(by_alias=True)]},
        }
        return PipelineOutcome(state=PipelineState.PAYMENT_REQUIRED, status_code=402, body=body)

    def _decode(self, payment_header: str, proof_header: str):
        try:
            raw_payment = decode_header(payment_header)
        except ValueError:
            raise MalformedPayment("Invalid X-Payment header: not valid base64 JSON")
        try:
            raw_proof = decode_header(proof_header)
        except ValueError:
            raise MalformedProof("Invalid X-ZK-Proof header: not valid base64 JSON")

        if not raw_payment.get("signature") or not raw_payment.get("amount") or not raw_payment.get("payTo"):
            raise MalformedPayment("Invalid payment: missing signature, amount, or payTo")

        try:
            payment = PaymentEnvelope.model_validate(raw_payment)
        except ValidationError as e:
            raise MalformedPayment(f"Invalid payment: {_first_error(e)}")
        try:
            proof = ZkProofEnvelope.model_validate(raw_proof)
        except ValidationError as e:
            raise MalformedProof(f"Invalid ZK proof: {_first_error(e)}")

        self.check_authorization(payment)
        return payment, proof

    def check_authorization(self, payment: PaymentEnvelope) -> None:
        """
        The signed transfer must move exactly what the payment claims:
        settlement submits the authorization, not the payment's own fields.
        """
        auth = payment.authorization
        if auth is None:
            return

        if (auth.to or "").lower() != payment.pay_to.lower():
            raise BindingMismatch(
                f"Authorization mismatch: payment names {payment.pay_to}, authorization transfers to {auth.to}",
                "authorization.to", auth.to, payment.pay_to,
            )
        try:
            value = int(auth.value)
        except ValueError:
            raise MalformedPayment(f"Invalid payment: authorization value {auth.value!r} is not an integer")
        if value != payment.amount:
            raise BindingMismatch(
                f"Authorization mismatch: payment claims {payment.amount}, authorization transfers {value}",
                "authorization.value", value, payment.amount,
            )

        try:
            signer = recover_authorization_signer(auth, payment.signature, self.token_domain)
        except Exception as e:
            logger.warning(f"Authorization signature unreadable: {e}")
            raise MalformedPayment("Invalid payment: authorization signature could not be verified")
        if signer.lower() != auth.from_.lower():
            raise MalformedPayment(f"Invalid payment: authorization from {auth.from_} is signed by {signer}")

    def _check_binding(self, payment: PaymentEnvelope, proof: ZkProofEnvelope, request_id) -> PaymentParameters:
        # what the payment claims, not what the proof claims
        params = PaymentParameters(
            amount=payment.amount,
            pay_to=payment.pay_to,
            chain_id=payment.chain_id if payment.chain_id is not None else self.pricing.chain_id,
            token=payment.token or self.pricing.token,
        )
        result = verify_payment_binding(proof.payment_binding, params, proof_hash(proof.proof))

        self._emit(
            request_id, EventStep.BINDING_CHECK, "Binding Check",
            "Proof binding matches payment parameters." if result.valid else f"Binding mismatch: {result.reason}",
            "Server", EventStatus.SUCCESS if result.valid else EventStatus.FAILURE,
            {
                "proofBinding": proof.payment_binding.model_dump(by_alias=True) if proof.payment_binding else None,
                "paymentParams": params.wire(),
                "valid": result.valid,
                "reason": result.reason,
            },
        )
        if not result.valid:
            raise BindingMismatch(result.reason, result.field, result.proof_value, result.payment_value)
        return params

    async def _check_verifier(self, payment: PaymentEnvelope, proof: ZkProofEnvelope, request_id) -> VerifierResult:
        tx = {"to": payment.pay_to, "amount": str(payment.amount), "token": payment.token or self.pricing.token}
        try:
            result = await self.verifier.verify(proof, tx, proof.model_hash)
        except Exception as e:
            # fail closed: no answer from the cosigner is never an approval
            error = e if isinstance(e, VerifierUnreachable) else VerifierUnreachable(f"Cosigner error: {e}")
            logger.warning(f"Cosigner verification failed: {error.reason}")
            self._emit(
                request_id, EventStep.PROOF_VERIFIED, "Cosigner Unavailable",
                "Cosigner unavailable - cannot verify proof. Rejecting request.",
                "Server", EventStatus.FAILURE, {"cosignerError": error.reason},
            )
            if error is e:
                raise
            raise error from e

        if not result.approved:
            self._emit(
                request_id, EventStep.PROOF_REJECTED, "Cosigner Rejected",
                f"Cosigner rejected proof: {result.reason}",
                "Cosigner", EventStatus.FAILURE, result.model_dump(exclude_none=True),
            )
            raise VerifierRejected(result.reason or "Cosigner rejected proof without a reason")

        if result.nonce is not None and not self.nonces.claim(result.nonce):
            reason = f"Cosigner approval nonce {result.nonce} was already used"
            self._emit(
                request_id, EventStep.PROOF_REJECTED, "Replayed Approval",
                reason, "Server", EventStatus.FAILURE, {"nonce": result.nonce},
            )
            raise VerifierRejected(reason)

        self._emit(
            request_id, EventStep.PROOF_VERIFIED, "Proof Verified",
            "Cosigner verified correct ML execution.",
            "Cosigner", EventStatus.SUCCESS,
            {"nonce": result.nonce, "signature": (result.signature or "")[:20] + "..."},
        )
        return result

    def _reject(
        self,
        outcome: PipelineOutcome,
        error: GateRejection,
        defer_completion: bool,
        request_id: Optional[str],
    ) -> PipelineOutcome:
        logger.warning(f"Rejected at {outcome.state.value}: {error.reason}")

        if isinstance(error, BindingMismatch):
            self._emit(
                request_id, EventStep.PROOF_REJECTED, "Proof Rejected",
                error.reason, "Server", EventStatus.FAILURE, {"reason": error.reason, "field": error.field},
            )

        if not defer_completion:
            description = (
                f"Attack blocked: {error.reason}" if isinstance(error, BindingMismatch) else error.reason
            )
            self._emit(
                request_id, EventStep.VERIFY_COMPLETED, "Verification Failed",
                description, "Server", EventStatus.FAILURE,
            )

        outcome.rejected_at = outcome.state
        outcome.state = PipelineState.REJECTED
        outcome.status_code = error.status_code
        outcome.reason = error.reason
        outcome.error = error
        outcome.body = error.to_dict()
        return outcome


def _first_error(e: ValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(part) for part in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else err.get("msg", "invalid")
