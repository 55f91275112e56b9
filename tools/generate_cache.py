#!/usr/bin/env python3
"""
Pre-generate the scenario proof cache.

Runs the prover ONCE for the legitimate payment parameters and stores the
result as the "normal" scenario proof plus the content-addressed entry.
Attack scenarios reuse the same proof; they diverge at payment time.

Usage:
    python tools/generate_cache.py [--cache-dir DIR] [--prover PATH]
"""
import argparse
import sys

from zk402 import config
from zk402.lib.errors import ProverFailure
from zk402.lib.proof_cache import ProofCache
from zk402.lib.prover import SubprocessProverBridge
from zk402.lib.scenarios import default_catalog


def main() -> int:
    parser = argparse.ArgumentParser(description="Generate cached zkML proofs for demo scenarios")
    parser.add_argument("--cache-dir", default=config.PROOF_CACHE_DIR)
    parser.add_argument("--prover", default=config.PROVER_BINARY)
    parser.add_argument("--models-dir", default=config.MODELS_DIR)
    parser.add_argument("--timeout", type=float, default=config.PROVER_TIMEOUT_SECS)
    args = parser.parse_args()

    pricing = config.pricing()
    catalog = default_catalog(pricing.pay_to, pricing.chain_id, pricing.token, pricing.amount)
    normal = catalog.get("normal")

    cache = ProofCache(args.cache_dir)
    prover = SubprocessProverBridge(args.prover, models_dir=args.models_dir, timeout=args.timeout, cache=cache)

    print("=== ZK-402 Proof Cache Generator ===\n")
    print(f"Payment params: {normal.proof_params.wire()}")
    print(f"Features: {normal.features}")
    print("\nGenerating proof (this will run the prover binary)...\n")

    try:
        envelope = prover.run_sync(normal.features, normal.proof_params, use_cache=False)
    except ProverFailure as e:
        print(f"Cache generation failed: {e.reason}")
        return 1

    cache.put(normal.proof_params, normal.features, envelope)

    print(f"Decision: {envelope.decision.value}")
    print(f"Model hash: {envelope.model_hash}")
    print(f"Proof size: {len(envelope.proof)} chars")
    print(f"Binding hash: {envelope.payment_binding.binding_hash}")

    for scenario in catalog:
        path = cache.put_scenario(scenario.name, envelope)
        print(f"Saved: {path}")

    print("\nCache generation complete.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
