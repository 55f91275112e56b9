"""
ZK-402 protected resource.

GET /weather without payment answers 402 with the payment requirements.
With X-Payment + X-ZK-Proof it runs the verification pipeline and serves
the data only when every gate passes.
"""
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

router = APIRouter(tags=["resource"])


def weather_payload(pricing, network: str) -> dict:
    return {
        "location": "San Francisco, CA",
        "temperature": 62,
        "unit": "fahrenheit",
        "conditions": "Partly cloudy",
        "humidity": 68,
        "wind": {"speed": 12, "direction": "WSW"},
        "forecast": "Clearing skies expected by evening",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "payment": {
            "amount": pricing.amount,
            "token": pricing.token,
            "network": network,
            "verified": True,
            "zkProofValid": True,
        },
    }


@router.get("/weather")
async def get_weather(
    request: Request,
    x_payment: Optional[str] = Header(None, alias="X-Payment"),
    x_zk_proof: Optional[str] = Header(None, alias="X-ZK-Proof"),
    x_defer_completion: Optional[str] = Header(None, alias="X-Defer-Completion"),
    x_request_id: Optional[str] = Header(None, alias="X-Request-Id"),
):
    pipeline = request.app.state.pipeline
    outcome = await pipeline.run(
        x_payment,
        x_zk_proof,
        resource=request.url.path,
        defer_completion=bool(x_defer_completion),
        request_id=x_request_id,
    )
    if not outcome.accepted:
        return JSONResponse(outcome.body, status_code=outcome.status_code)

    data = weather_payload(pipeline.pricing, pipeline.network)
    if outcome.settlement is not None:
        data["payment"]["settlement"] = outcome.settlement.to_dict()
    return data
