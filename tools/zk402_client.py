#!/usr/bin/env python3
"""
ZK-402 client: runs one scenario against a running server.

1. GET /weather without payment -> expect 402 + requirements
2. load the cached scenario proof, bind it to the scenario's proof params
3. sign the scenario's (possibly tampered) payment params
4. GET /weather with X-Payment + X-ZK-Proof

Usage:
    MNEMONIC="..." python tools/zk402_client.py --scenario tampered_amount
"""
import argparse
import json
import sys

import httpx

from zk402 import config
from zk402.lib.errors import ScenarioProofMissing
from zk402.lib.pipeline import encode_header
from zk402.lib.proof_cache import ProofCache
from zk402.lib.scenarios import build_scenario_request, default_catalog
from zk402.lib.signing import eip712_domain


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a ZK-402 scenario against the server")
    parser.add_argument("--scenario", default="normal")
    parser.add_argument("--server", default=f"http://localhost:{config.SERVER_PORT}")
    parser.add_argument("--cache-dir", default=config.PROOF_CACHE_DIR)
    args = parser.parse_args()

    pricing = config.pricing()
    catalog = default_catalog(pricing.pay_to, pricing.chain_id, pricing.token, pricing.amount)
    scenario = catalog.get(args.scenario)
    if scenario is None:
        print(f"Unknown scenario: {args.scenario}")
        print(f"Available: {', '.join(catalog.names())}")
        return 1

    account = config.load_account()
    if account is None:
        print("MNEMONIC not set - cannot sign payment")
        return 1

    print("\n  ZK-402 Client")
    print(f"  Scenario:  {scenario.title}")
    print(f"  Expected:  {scenario.expected_outcome}\n")

    with httpx.Client(base_url=args.server, timeout=600.0) as client:
        print("[Client] GET /weather (no payment)...")
        initial = client.get("/weather")
        if initial.status_code != 402:
            print(f"[Client] Unexpected status: {initial.status_code}")
            print(initial.text)
            return 1

        accepts = initial.json()["x402"]["accepts"][0]
        print("[Client] Got 402 - Payment required:")
        print(f"  Amount: {accepts['maxAmountRequired']}")
        print(f"  Asset:  {accepts['asset']}")
        print(f"  PayTo:  {accepts['payTo']}")
        print(f"  zkML:   {'required' if accepts.get('extra', {}).get('zkmlRequired') else 'not required'}")

        cache = ProofCache(args.cache_dir)
        try:
            envelope = cache.get_scenario(scenario.name)
        except ScenarioProofMissing:
            # attack scenarios use the same proof as normal
            envelope = cache.get_scenario("normal")
        print(f"\n[Client] Proof loaded. Decision: {envelope.decision.value}, model_hash: {envelope.model_hash[:16]}...")

        domain = eip712_domain(pricing.chain_id, pricing.token, config.TOKEN_DOMAIN_NAME, config.TOKEN_DOMAIN_VERSION)
        payment, zk_proof = build_scenario_request(envelope, scenario, account, domain)
        print(f"[Client] Binding created: hash={zk_proof.payment_binding.binding_hash[:16]}...")
        print(f"[Client] Wallet address: {account.address}")

        payment_header = encode_header(payment.wire())
        proof_header = encode_header(zk_proof.wire())
        print(f"\n[Client] GET /weather with X-Payment ({len(payment_header)}B) + X-ZK-Proof ({len(proof_header)}B)...")

        response = client.get("/weather", headers={"X-Payment": payment_header, "X-ZK-Proof": proof_header})

    print(f"\n[Client] Response: {response.status_code}")
    body = response.json()
    print(json.dumps(body, indent=2))

    if response.status_code == 200:
        print("\n  Result: ACCESS GRANTED")
    elif response.status_code == 403:
        print(f"\n  Result: BLOCKED - {body.get('reason')}")
    else:
        print(f"\n  Result: Unexpected status {response.status_code}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
