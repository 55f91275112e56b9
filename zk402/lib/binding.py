"""
Payment binding for zkML proofs.

A binding commits a proof to the exact payment it authorizes:

    binding_hash = SHA256("{amount}|{payTo}|{chainId}|{token}|{proof_hash}")

where proof_hash = SHA256(proof). Anyone holding the four payment
parameters and the proof can recompute it; no secret is involved, so the
binding is an integrity check, not an authorization.
"""
import hashlib
from typing import NamedTuple, Optional, Union

from ..models.common import PaymentParameters, ProofBinding


class BindingResult(NamedTuple):
    valid: bool
    reason: Optional[str] = None
    field: Optional[str] = None
    proof_value: object = None
    payment_value: object = None


def sha256_hex(data: Union[str, bytes]) -> str:
    """Compute SHA-256 hash and return as lowercase hex string."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def proof_hash(proof: Optional[str]) -> str:
    return sha256_hex(proof or "")


def binding_preimage(amount, pay_to: str, chain_id, token: str, proof_hash_hex: str) -> str:
    return f"{amount}|{pay_to}|{chain_id}|{token}|{proof_hash_hex}"


def create_payment_binding(params: PaymentParameters, proof_hash_hex: str) -> ProofBinding:
    """Bind a proof (by hash) to payment parameters. Pure and deterministic."""
    preimage = binding_preimage(params.amount, params.pay_to, params.chain_id, params.token, proof_hash_hex)
    return ProofBinding(
        amount=params.amount,
        pay_to=params.pay_to,
        chain_id=params.chain_id,
        token=params.token,
        binding_hash=sha256_hex(preimage),
    )


def _same_number(a, b) -> bool:
    try:
        return int(a) == int(b)
    except (TypeError, ValueError):
        return False


def _same_address(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").lower() == (b or "").lower()


def verify_payment_binding(
    binding: Optional[ProofBinding],
    observed: PaymentParameters,
    proof_hash_hex: str,
) -> BindingResult:
    """
    Check a binding against the parameters actually being paid.

    Field checks run first, in order, so the first divergence is named
    precisely; the hash is recomputed last to catch a binding whose fields
    were edited without recomputing its hash.
    """
    if binding is None:
        return BindingResult(False, "Proof carries no payment binding", "payment_binding")

    if not _same_number(binding.amount, observed.amount):
        return BindingResult(
            False,
            f"Amount mismatch: proof bound to {binding.amount}, payment requests {observed.amount}",
            "amount", binding.amount, observed.amount,
        )

    if not _same_address(binding.pay_to, observed.pay_to):
        return BindingResult(
            False,
            f"Recipient mismatch: proof bound to {binding.pay_to}, payment requests {observed.pay_to}",
            "payTo", binding.pay_to, observed.pay_to,
        )

    if not _same_number(binding.chain_id, observed.chain_id):
        return BindingResult(
            False,
            f"Chain ID mismatch: proof bound to {binding.chain_id}, payment requests {observed.chain_id}",
            "chainId", binding.chain_id, observed.chain_id,
        )

    if not _same_address(binding.token, observed.token):
        return BindingResult(
            False,
            f"Token mismatch: proof bound to {binding.token}, payment requests {observed.token}",
            "token", binding.token, observed.token,
        )

    preimage = binding_preimage(binding.amount, binding.pay_to, binding.chain_id, binding.token, proof_hash_hex)
    expected = sha256_hex(preimage)
    if binding.binding_hash != expected:
        return BindingResult(
            False,
            "Binding hash integrity check failed",
            "binding_hash", binding.binding_hash, expected,
        )

    return BindingResult(True)
