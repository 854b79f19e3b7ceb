import re
from typing import Any

ZERO_ADDRESS = "0x" + "0" * 40
ZERO_HASH = "0x" + "0" * 64

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_address(value: Any) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value.strip()))


def normalize_address(value: str) -> str:
    """Addresses compare case-insensitively; we always store them lower-case."""
    return value.strip().lower()


def is_payment_proof(value: Any) -> bool:
    """A feedback payment proof counts only when present and not the all-zero hash."""
    if not value or not isinstance(value, str):
        return False
    return value.strip().lower() not in (ZERO_HASH, "0x", "")
