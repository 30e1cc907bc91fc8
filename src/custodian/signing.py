"""
Shared signing capability and wire encodings.

Both the issuing side (sponsorship signer, quote service) and the validating
side (paymaster, quote verifier) build their digests here, so the encodings
cannot drift apart:

    authorization = keccak256(abi.encode(
        address sender, uint48 validUntil, uint48 validAfter,
        address paymaster, uint256 chainId, address entryPoint))

    quote = keccak256(abi.encode(
        string scopeId, uint256 fiatMinorUnits, string fiatCurrency,
        uint256 settlementAmount, uint256 validUntil, string settlementAsset))

Digests are signed as EIP-191 personal messages
("\\x19Ethereum Signed Message:\\n32" ‖ digest), so the on-chain side
recovers with the matching ECDSA convention.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from eth_abi import decode, encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from eth_utils import keccak, to_bytes, to_checksum_address


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
MAX_UINT48 = 2**48 - 1

AUTHORIZATION_TYPES = ["address", "uint48", "uint48", "address", "uint256", "address"]
QUOTE_TYPES = ["string", "uint256", "string", "uint256", "uint256", "string"]
PAYMASTER_DATA_TYPES = ["uint48", "uint48", "bytes"]

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_SELECTOR_RE = re.compile(r"^0x[a-fA-F0-9]{8}$")


def normalize_address(address: str) -> str:
    """Validate an Ethereum address and return its checksum form."""
    candidate = address.strip()
    if candidate.startswith("0X"):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid Ethereum address: {address}")
    return to_checksum_address(candidate)


def normalize_selector(selector: str) -> str:
    """Validate a 4-byte function selector and return it lower-cased."""
    candidate = selector.strip().lower()
    if not _SELECTOR_RE.match(candidate):
        raise ValueError(f"Invalid function selector: {selector}")
    return candidate


def selector_from_call_data(call_data: str) -> str:
    """First four bytes of call data as ``0x``-prefixed hex ("0x" when shorter)."""
    raw = call_data.strip().lower()
    if not raw.startswith("0x"):
        raw = "0x" + raw
    return raw[:10] if len(raw) >= 10 else "0x"


def hex_to_bytes(value: str | bytes) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return to_bytes(hexstr=value)


def bytes_to_hex(value: bytes) -> str:
    return "0x" + bytes(value).hex()


def authorization_digest(
    sender: str,
    valid_until: int,
    valid_after: int,
    paymaster: str,
    chain_id: int,
    entry_point: str,
) -> bytes:
    """Digest the sponsor signs and the paymaster recomputes."""
    for name, value in (("valid_until", valid_until), ("valid_after", valid_after)):
        if not 0 <= value <= MAX_UINT48:
            raise ValueError(f"{name} does not fit in uint48: {value}")
    payload = encode(
        AUTHORIZATION_TYPES,
        [
            normalize_address(sender),
            valid_until,
            valid_after,
            normalize_address(paymaster),
            chain_id,
            normalize_address(entry_point),
        ],
    )
    return keccak(payload)


def quote_digest(
    scope_id: str,
    fiat_minor_units: int,
    fiat_currency: str,
    settlement_amount: int,
    valid_until: int,
    settlement_asset: str,
) -> bytes:
    """Digest over the quote's wire fields, including the asset it settles in."""
    payload = encode(
        QUOTE_TYPES,
        [scope_id, fiat_minor_units, fiat_currency, settlement_amount, valid_until, settlement_asset],
    )
    return keccak(payload)


def encode_paymaster_data(valid_until: int, valid_after: int, signature: str | bytes) -> str:
    """abi.encode(uint48 validUntil, uint48 validAfter, bytes signature)."""
    return bytes_to_hex(
        encode(PAYMASTER_DATA_TYPES, [valid_until, valid_after, hex_to_bytes(signature)])
    )


def decode_paymaster_data(paymaster_data: str | bytes) -> tuple[int, int, bytes]:
    valid_until, valid_after, signature = decode(PAYMASTER_DATA_TYPES, hex_to_bytes(paymaster_data))
    return int(valid_until), int(valid_after), bytes(signature)


def build_paymaster_and_data(
    paymaster: str,
    paymaster_data: str | bytes,
    verification_gas_limit: int = 300_000,
    post_op_gas_limit: int = 100_000,
) -> str:
    """v0.7 packing: paymaster(20) ‖ verificationGas(16) ‖ postOpGas(16) ‖ data."""
    return bytes_to_hex(
        hex_to_bytes(normalize_address(paymaster))
        + verification_gas_limit.to_bytes(16, "big")
        + post_op_gas_limit.to_bytes(16, "big")
        + hex_to_bytes(paymaster_data)
    )


@dataclass(frozen=True)
class PaymasterAndData:
    paymaster: str
    verification_gas_limit: int
    post_op_gas_limit: int
    paymaster_data: bytes


def split_paymaster_and_data(value: str | bytes) -> PaymasterAndData:
    raw = hex_to_bytes(value)
    if len(raw) < 52:
        raise ValueError("paymasterAndData shorter than the 52-byte static prefix")
    return PaymasterAndData(
        paymaster=to_checksum_address(raw[:20]),
        verification_gas_limit=int.from_bytes(raw[20:36], "big"),
        post_op_gas_limit=int.from_bytes(raw[36:52], "big"),
        paymaster_data=raw[52:],
    )


def recover_signer(digest: bytes, signature: str | bytes) -> Optional[str]:
    """Recover the personal-message signer of ``digest``; None if malformed."""
    try:
        return Account.recover_message(
            encode_defunct(primitive=digest),
            signature=hex_to_bytes(signature),
        )
    except Exception:
        return None


class PersonalSigner:
    """Holds the sponsor key and signs 32-byte digests as personal messages."""

    def __init__(self, account: LocalAccount):
        self._account = account

    @classmethod
    def from_key(cls, private_key: str) -> "PersonalSigner":
        return cls(Account.from_key(private_key))

    @property
    def address(self) -> str:
        return self._account.address

    def sign_digest(self, digest: bytes) -> str:
        signed = self._account.sign_message(encode_defunct(primitive=digest))
        return bytes_to_hex(signed.signature)

    def is_signer(self, digest: bytes, signature: str | bytes) -> bool:
        recovered = recover_signer(digest, signature)
        return recovered is not None and recovered.lower() == self.address.lower()

    def __repr__(self) -> str:
        return f"PersonalSigner(address={self.address})"
