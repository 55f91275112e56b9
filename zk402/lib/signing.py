"""
EIP-712 TransferWithAuthorization (EIP-3009) signing for x402 payments.

The payer signs an authorization that lets the facilitator move exactly
`value` of the token to `to` within a validity window.
"""
import secrets
import time
from typing import Tuple

from eth_account import Account
from eth_account.messages import encode_typed_data

from ..models.common import TransferAuthorization

AUTHORIZATION_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ],
}


def eip712_domain(chain_id: int, token: str, name: str = "USDT0", version: str = "1") -> dict:
    return {
        "name": name,
        "version": version,
        "chainId": chain_id,
        "verifyingContract": token,
    }


def typed_authorization(authorization: TransferAuthorization, domain: dict) -> dict:
    return {
        "types": AUTHORIZATION_TYPES,
        "primaryType": "TransferWithAuthorization",
        "domain": domain,
        "message": {
            "from": authorization.from_,
            "to": authorization.to,
            "value": int(authorization.value),
            "validAfter": int(authorization.valid_after),
            "validBefore": int(authorization.valid_before),
            "nonce": bytes.fromhex(authorization.nonce.removeprefix("0x")),
        },
    }


def sign_transfer_authorization(
    account,
    to: str,
    value: int,
    domain: dict,
    valid_for_secs: int = 3600,
) -> Tuple[TransferAuthorization, str]:
    """
    Sign a TransferWithAuthorization for `value` token units to `to`.

    Returns the authorization and the 0x-prefixed 65-byte signature.
    """
    now = int(time.time())
    authorization = TransferAuthorization(
        from_=account.address,
        to=to,
        value=str(value),
        valid_after=str(now - 600),
        valid_before=str(now + valid_for_secs),
        nonce="0x" + secrets.token_hex(32),
    )
    signable = encode_typed_data(full_message=typed_authorization(authorization, domain))
    signed = account.sign_message(signable)
    return authorization, "0x" + bytes(signed.signature).hex()


def recover_authorization_signer(authorization: TransferAuthorization, signature: str, domain: dict) -> str:
    signable = encode_typed_data(full_message=typed_authorization(authorization, domain))
    return Account.recover_message(signable, signature=signature)


def split_signature(signature: str) -> Tuple[int, bytes, bytes]:
    """(v, r, s) from a 65-byte r||s||v signature."""
    raw = bytes.fromhex(signature.removeprefix("0x"))
    if len(raw) != 65:
        raise ValueError(f"Invalid signature length: {len(raw)} (expected 65)")
    v = raw[64]
    if v < 27:
        v += 27
    return v, raw[:32], raw[32:64]
