"""
Error taxonomy for the proof-gated payment flow.

Gate errors carry the HTTP status the pipeline answers with and a
field-level reason suitable for showing to the party that sent the request.
A first-contact request without payment is not an error: the pipeline
reports it as a PAYMENT_REQUIRED outcome.
"""
from typing import Any, Optional


class Zk402Error(Exception):
    status_code = 500
    error = "Internal error"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    def to_dict(self) -> dict:
        return {"error": self.error, "reason": self.reason}


# --- Gate rejections ---

class GateRejection(Zk402Error):
    """Terminal failure of one pipeline gate."""


class MissingProof(GateRejection):
    status_code = 400
    error = "ZK-402 requires X-ZK-Proof header"

    def __init__(self, reason: str = "Payment must include a zkML proof binding to verify transaction authorization."):
        super().__init__(reason)


class MalformedPayment(GateRejection):
    status_code = 400
    error = "Invalid payment"


class MalformedProof(GateRejection):
    status_code = 400
    error = "Invalid ZK proof"


class BindingMismatch(GateRejection):
    status_code = 403
    error = "ZK proof binding verification failed"

    def __init__(
        self,
        reason: str,
        field: Optional[str] = None,
        proof_value: Any = None,
        payment_value: Any = None,
    ):
        super().__init__(reason)
        self.field = field
        self.proof_value = proof_value
        self.payment_value = payment_value


class VerifierRejected(GateRejection):
    status_code = 403
    error = "Cosigner verification failed"


class VerifierUnreachable(GateRejection):
    status_code = 503
    error = "Cosigner unavailable"


# --- Collaborator failures ---

class ProverFailure(Zk402Error):
    error = "Prover failed"


class SettlementFailure(Zk402Error):
    """Settlement failed after acceptance; never revokes the acceptance."""
    status_code = 502
    error = "Settlement failed"


class ScenarioProofMissing(Zk402Error):
    status_code = 404
    error = "No cached proof"

    def __init__(self, name: str):
        super().__init__(f'No cached proof for scenario "{name}". Run: python tools/generate_cache.py')
        self.name = name
