import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from . import config
from .lib.events import EventBus
from .lib.pipeline import VerificationPipeline
from .lib.proof_cache import ProofCache
from .lib.prover import ProverBridge, SubprocessProverBridge
from .lib.scenarios import ScenarioCatalog, default_catalog
from .lib.signing import eip712_domain
from .lib.verifier import HttpVerifierBridge, VerifierBridge
from .models.common import PaymentParameters
from .routes.a2a import router as a2a_router
from .routes.demo import router as demo_router
from .routes.events import router as events_router
from .routes.facilitator import router as facilitator_router
from .routes.resource import router as resource_router
from .services.settlement import Settler, Web3Settler

logger = logging.getLogger("zk402")


def create_app(
    pricing: Optional[PaymentParameters] = None,
    network: str = config.NETWORK,
    verifier: Optional[VerifierBridge] = None,
    prover: Optional[ProverBridge] = None,
    cache: Optional[ProofCache] = None,
    events: Optional[EventBus] = None,
    settler: Optional[Settler] = None,
    catalog: Optional[ScenarioCatalog] = None,
    account=None,
    settle: bool = True,
) -> FastAPI:
    """
    Build the ZK-402 app. Every collaborator can be injected; anything left
    out is built from the environment (see config.py).
    """
    pricing = pricing or config.pricing()
    account = account if account is not None else config.load_account()
    if not pricing.pay_to and account is not None:
        # no PAY_TO_ADDRESS: the server wallet receives payments
        pricing = pricing.model_copy(update={"pay_to": account.address})
    cache = cache or ProofCache(config.PROOF_CACHE_DIR)
    events = events or EventBus()
    verifier = verifier or HttpVerifierBridge(config.COSIGNER_URL, timeout=config.VERIFIER_TIMEOUT_SECS)
    prover = prover or SubprocessProverBridge(
        config.PROVER_BINARY,
        models_dir=config.MODELS_DIR,
        timeout=config.PROVER_TIMEOUT_SECS,
        cache=cache,
    )
    if settler is None and settle and account is not None:
        settler = Web3Settler(config.RPC_URL, pricing.token, account)
    catalog = catalog or default_catalog(pricing.pay_to, pricing.chain_id, pricing.token, pricing.amount)

    app = FastAPI(title="ZK-402 Proof-Gated Payments API", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    token_domain = eip712_domain(
        pricing.chain_id, pricing.token, config.TOKEN_DOMAIN_NAME, config.TOKEN_DOMAIN_VERSION,
    )
    app.state.pipeline = VerificationPipeline(
        pricing=pricing,
        network=network,
        verifier=verifier,
        events=events,
        settler=settler if settle else None,
        token_domain=token_domain,
    )
    app.state.events = events
    app.state.cache = cache
    app.state.prover = prover
    app.state.catalog = catalog
    app.state.account = account
    app.state.token_domain = token_domain

    app.include_router(resource_router)
    app.include_router(events_router)
    app.include_router(demo_router)
    app.include_router(facilitator_router)
    app.include_router(a2a_router)

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.get("/health")
    async def health(request: Request):
        state = request.app.state
        pipeline = state.pipeline
        return {
            "status": "ok",
            "network": config.NETWORK_NAME,
            "chainId": pipeline.pricing.chain_id,
            "token": pipeline.pricing.token,
            "payTo": pipeline.pricing.pay_to,
            "price": pipeline.pricing.amount,
            "cosigner": {"url": config.COSIGNER_URL, "status": await pipeline.verifier.health()},
            "sseClients": state.events.subscriber_count,
        }

    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    logger.info(f"ZK-402 server on {config.NETWORK_NAME} ({config.CHAIN_ID}), price {config.PRICE_USDT0}")
    uvicorn.run(create_app(), host=config.SERVER_HOST, port=config.SERVER_PORT)
