from __future__ import annotations

import re

from eth_account import Account
from eth_account.messages import encode_defunct

from loreauth.logging import get_logger

logger = get_logger(__name__)

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_valid_address(address: str | None) -> bool:
    return bool(address) and bool(_ADDRESS_RE.match(address))


def recover_address(message: str, signature: str) -> str:
    """Recover the signer of an EIP-191 ``personal_sign`` message."""
    return Account.recover_message(encode_defunct(text=message), signature=signature)


def verify_signature(address: str, message: str, signature: str) -> bool:
    """Return True iff ``signature`` over ``message`` recovers to ``address``.

    Pure function: malformed signatures and recovery failures return False.
    """
    if not is_valid_address(address) or not message or not signature:
        return False
    try:
        recovered = recover_address(message, signature)
    except Exception as exc:
        logger.debug("signature_recovery_failed", error_type=type(exc).__name__)
        return False
    return recovered.lower() == address.lower()
