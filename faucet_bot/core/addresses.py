# faucet_bot/core/addresses.py
"""Address format checks (EVM style: ``0x`` followed by 40 hex digits)."""
from __future__ import annotations

import re

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_ADDRESS_SEARCH_RE = re.compile(r"0x[a-fA-F0-9]{40}(?![a-fA-F0-9])")


def is_valid_address(value: str) -> bool:
    """Pure format check; no checksum or on-chain lookup."""
    return bool(value) and _ADDRESS_RE.match(value.strip()) is not None


def find_address(text: str | None) -> str | None:
    """Return the first well-formed address embedded in free text."""
    if not text:
        return None
    match = _ADDRESS_SEARCH_RE.search(text)
    return match.group(0) if match else None
