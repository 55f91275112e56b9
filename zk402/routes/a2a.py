"""
Agent-to-agent (A2A) surface for the weather agent.

GET  /.well-known/agent.json  - AgentCard
POST /a2a/tasks/send          - JSON-RPC tasks/send, paid with the normal scenario proof
"""
import json
import logging
from uuid import uuid4

from fastapi import APIRouter, Request

from ..lib.errors import ScenarioProofMissing
from ..lib.pipeline import encode_header
from ..lib.scenarios import build_scenario_request
from ..models.common import TaskSendRequest
from .resource import weather_payload

logger = logging.getLogger("a2a")

router = APIRouter(tags=["a2a"])

RESOURCE = "/weather"


def agent_card(base_url: str, network: str) -> dict:
    return {
        "name": "ZK-402 Weather Agent",
        "description": "Weather data with proof-gated USDT0 payments via x402 + JOLT-Atlas zkML",
        "url": base_url,
        "version": "1.0.0",
        "capabilities": {"streaming": True, "pushNotifications": False},
        "skills": [{
            "id": "get-weather",
            "name": "Weather Lookup",
            "description": (
                "Pay-per-request weather data with zkML proof verification. "
                "Requires USDT0 payment and a valid JOLT-Atlas ZK proof binding."
            ),
        }],
        "defaultInputModes": ["text"],
        "defaultOutputModes": ["text"],
        "extensions": {
            "x402": {"network": network, "asset": "USDT0", "price": "0.0001", "zkmlRequired": True},
        },
    }


def _task(task_id: str, state: str, text: str, artifacts=None) -> dict:
    task = {
        "id": task_id,
        "status": {
            "state": state,
            "message": {"role": "agent", "parts": [{"type": "text", "text": text}]},
        },
    }
    if artifacts:
        task["artifacts"] = artifacts
    return task


@router.get("/.well-known/agent.json")
def get_agent_card(request: Request):
    base_url = str(request.base_url).rstrip("/")
    return agent_card(base_url, request.app.state.pipeline.network)


@router.post("/a2a/tasks/send")
async def tasks_send(body: TaskSendRequest, request: Request):
    if body.method != "tasks/send":
        return {
            "jsonrpc": "2.0",
            "id": body.id,
            "error": {"code": -32601, "message": f"Method not found: {body.method}"},
        }

    state = request.app.state
    task_id = (body.params or {}).get("id") or str(uuid4())
    scenario = state.catalog.get("normal")
    if scenario is None:
        return {"jsonrpc": "2.0", "id": body.id, "result": _task(task_id, "failed", "No normal scenario configured")}

    try:
        proof = state.cache.get_scenario("normal")
    except ScenarioProofMissing as e:
        return {"jsonrpc": "2.0", "id": body.id, "result": _task(task_id, "failed", e.reason)}

    if state.account is None:
        return {
            "jsonrpc": "2.0",
            "id": body.id,
            "result": _task(task_id, "failed", "No client wallet configured (set MNEMONIC)"),
        }

    payment, zk_proof = build_scenario_request(proof, scenario, state.account, state.token_domain)
    outcome = await state.pipeline.run(
        encode_header(payment.wire()),
        encode_header(zk_proof.wire()),
        resource=RESOURCE,
        request_id=task_id,
    )

    if not outcome.accepted:
        text = f"ZK-402 verification failed ({outcome.status_code}): {outcome.reason}"
        return {"jsonrpc": "2.0", "id": body.id, "result": _task(task_id, "failed", text)}

    data = weather_payload(state.pipeline.pricing, state.pipeline.network)
    artifacts = [{"name": "weather-data", "parts": [{"type": "text", "text": json.dumps(data)}]}]
    return {
        "jsonrpc": "2.0",
        "id": body.id,
        "result": _task(task_id, "completed", "Weather data retrieved via ZK-402 proof-gated payment.", artifacts),
    }
