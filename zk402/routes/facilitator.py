"""
x402 facilitator endpoints.

POST /facilitator/verify  - binding check + cosigner verification for a {payment, zkProof} body
POST /facilitator/settle  - submit the payment's transferWithAuthorization
GET  /facilitator/supported
"""
import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ..lib.binding import proof_hash, verify_payment_binding
from ..lib.errors import GateRejection, VerifierUnreachable
from ..models.common import (
    FacilitatorSettleRequest,
    FacilitatorVerifyRequest,
    PaymentEnvelope,
    PaymentParameters,
    SupportedResponse,
    ZkProofEnvelope,
)
from ..services.settlement import SettlementStatus

logger = logging.getLogger("facilitator")

router = APIRouter(prefix="/facilitator", tags=["facilitator"])


def _parse_payment(raw: dict) -> PaymentEnvelope:
    try:
        return PaymentEnvelope.model_validate(raw)
    except ValidationError as e:
        raise HTTPException(400, f"Invalid payment: {e.errors()[0].get('msg')}")


@router.post("/verify")
async def facilitator_verify(body: FacilitatorVerifyRequest, request: Request):
    if not body.payment or not body.zk_proof:
        raise HTTPException(400, "Missing payment or zkProof in request body")

    pipeline = request.app.state.pipeline
    payment = _parse_payment(body.payment)
    try:
        zk_proof = ZkProofEnvelope.model_validate(body.zk_proof)
    except ValidationError as e:
        raise HTTPException(400, f"Invalid zkProof: {e.errors()[0].get('msg')}")
    try:
        pipeline.check_authorization(payment)
    except GateRejection as e:
        return JSONResponse({"approved": False, "reason": e.reason}, status_code=e.status_code)

    params = PaymentParameters(
        amount=payment.amount,
        pay_to=payment.pay_to,
        chain_id=pipeline.pricing.chain_id,
        token=pipeline.pricing.token,
    )
    result = verify_payment_binding(zk_proof.payment_binding, params, proof_hash(zk_proof.proof))
    if not result.valid:
        return JSONResponse({"approved": False, "reason": result.reason}, status_code=403)

    try:
        verdict = await pipeline.verifier.verify(
            zk_proof,
            {"to": payment.pay_to, "amount": str(payment.amount), "token": pipeline.pricing.token},
            zk_proof.model_hash,
        )
    except VerifierUnreachable as e:
        return JSONResponse({"approved": False, "reason": f"Cosigner error: {e.reason}"}, status_code=500)
    return verdict.model_dump(exclude_none=True)


@router.post("/settle")
async def facilitator_settle(body: FacilitatorSettleRequest, request: Request):
    if not body.payment:
        raise HTTPException(400, "Missing payment in request body")
    payment = _parse_payment(body.payment)
    logger.info(f"Settlement requested for amount={payment.amount} to={payment.pay_to}")
    try:
        request.app.state.pipeline.check_authorization(payment)
    except GateRejection as e:
        return JSONResponse({"settled": False, "reason": e.reason}, status_code=e.status_code)

    settler = request.app.state.pipeline.settler
    if settler is None:
        return {
            "settled": False,
            "reason": "Settlement not configured - requires a funded facilitator wallet.",
            "payment": payment.wire(),
        }

    result = await settler.settle(payment)
    return {
        "settled": result.status == SettlementStatus.SUCCESS,
        "settlement": result.to_dict(),
        "payment": payment.wire(),
    }


@router.get("/supported", response_model=SupportedResponse)
def facilitator_supported(request: Request):
    pipeline = request.app.state.pipeline
    return SupportedResponse(
        schemes=["exact"],
        networks=[pipeline.network],
        assets=[pipeline.pricing.token],
    )
