"""
Demo orchestration endpoints.

POST /demo/start-flow runs one scenario end to end: obtain a proof, sign the
scenario's (possibly tampered) payment, hit the 402 first-contact gate,
then submit payment + proof with deferred completion so this orchestrator
drives settlement and emits the single terminal event itself.

Every event of a run carries the run's request_id, so concurrent runs do
not confuse each other.
"""
import logging
from uuid import uuid4

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from .. import config
from ..lib.events import EventStep
from ..lib.pipeline import encode_header
from ..lib.scenarios import Scenario, build_scenario_request
from ..models.common import EventStatus, StartFlowRequest, ZkProofEnvelope

logger = logging.getLogger("demo")

router = APIRouter(prefix="/demo", tags=["demo"])

RESOURCE = "/weather"


async def obtain_proof(state, scenario: Scenario) -> ZkProofEnvelope:
    """Pre-generated scenario proof if present, otherwise run the prover."""
    cache = state.cache
    if cache is not None:
        # attack scenarios reuse the normal proof
        for name in (scenario.name, "normal"):
            if cache.has_scenario(name):
                return cache.get_scenario(name)
    return await state.prover.run_async(scenario.features, scenario.proof_params, use_cache=True)


@router.post("/start-flow")
async def start_flow(body: StartFlowRequest, request: Request):
    state = request.app.state
    bus = state.events
    pipeline = state.pipeline

    scenario = state.catalog.get(body.scenario)
    if scenario is None:
        raise HTTPException(400, f"Unknown scenario: {body.scenario}")

    request_id = uuid4().hex
    bus.emit(
        EventStep.FLOW_RESET, "Flow Reset", f"Starting {scenario.title} scenario.",
        "Client", EventStatus.INFO,
        {
            "scenario": scenario.name,
            "description": scenario.description,
            "expectedOutcome": scenario.expected_outcome,
        },
        request_id,
    )

    try:
        bus.emit(
            EventStep.PROOF_GENERATING, "Generating zkML Proof",
            "Running ONNX model inside Jolt zkVM...",
            "Client", EventStatus.PENDING,
            {"features": scenario.features, "scenarioName": scenario.name},
            request_id,
        )
        proof = await obtain_proof(state, scenario)
        bus.emit(
            EventStep.PROOF_RECEIVED,
            "ZK Proof Loaded (Cached)" if proof.from_cache else "ZK Proof Generated",
            f"Client loaded cached proof, decision: {proof.decision.value}" if proof.from_cache
            else f"Proof generated in {proof.elapsed_ms}ms, decision: {proof.decision.value}",
            "Client", EventStatus.SUCCESS,
            {
                "decision": proof.decision.value,
                "model_hash": proof.model_hash,
                "proofSize": len(proof.proof),
                "fromCache": proof.from_cache,
                "elapsed": proof.elapsed_ms,
                "scenarioName": scenario.name,
            },
            request_id,
        )

        if state.account is None:
            raise RuntimeError("No client wallet configured (set MNEMONIC)")
        payment, zk_proof = build_scenario_request(proof, scenario, state.account, state.token_domain)

        first = await pipeline.run(None, None, resource=RESOURCE, request_id=request_id)
        if first.status_code != 402:
            logger.warning(f"Expected 402 from {RESOURCE}, got {first.status_code}")

        outcome = await pipeline.run(
            encode_header(payment.wire()),
            encode_header(zk_proof.wire()),
            resource=RESOURCE,
            defer_completion=True,
            request_id=request_id,
        )

        if not outcome.accepted:
            bus.emit(
                EventStep.VERIFY_COMPLETED, "Verification Failed",
                f"Attack blocked: {outcome.reason}",
                "Server", EventStatus.FAILURE, None, request_id,
            )
            return {
                "success": False,
                "reason": outcome.reason,
                "status": outcome.status_code,
                "scenario": scenario.name,
                "requestId": request_id,
            }

        settlement = await pipeline.settle(outcome, request_id)
        tx_hash = settlement.tx_hash if settlement else None
        bus.emit(
            EventStep.VERIFY_COMPLETED, "Verification & Settlement Complete",
            f"All gates passed. {payment.amount} token units settled." if tx_hash
            else "All gates passed. Settlement attempted." if settlement
            else "All gates passed.",
            "Server", EventStatus.SUCCESS,
            {"txHash": tx_hash} if tx_hash else None,
            request_id,
        )
        return {
            "success": True,
            "scenario": scenario.name,
            "settlement": settlement.to_dict() if settlement else None,
            "requestId": request_id,
        }

    except Exception as e:
        logger.exception(f"Demo flow {request_id} failed: {e}")
        bus.emit(
            EventStep.FLOW_ERROR, "Flow Error", str(e), "Server", EventStatus.FAILURE,
            {"error": str(e)}, request_id,
        )
        return JSONResponse({"error": str(e), "requestId": request_id}, status_code=500)


@router.post("/reset")
def reset_flow(request: Request):
    request.app.state.events.emit(
        EventStep.FLOW_RESET, "Flow Reset", "Timeline cleared.", "Server", EventStatus.INFO,
    )
    return {"success": True}


@router.get("/status")
def demo_status(request: Request):
    state = request.app.state
    pricing = state.pipeline.pricing
    return {
        "connectedClients": state.events.subscriber_count,
        "serverAddress": pricing.pay_to,
        "network": config.NETWORK_NAME,
        "chainId": pricing.chain_id,
        "token": pricing.token,
        "cosignerUrl": config.COSIGNER_URL,
        "explorerUrl": config.EXPLORER_URL,
        "rpcUrl": config.RPC_URL,
        "clientAddress": state.account.address if state.account is not None else "",
        "price": pricing.amount,
        "scenarios": [s.summary() for s in state.catalog],
    }
