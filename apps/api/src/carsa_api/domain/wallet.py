"""Ledger account address checks."""

from __future__ import annotations

import re

# Base58 alphabet without 0, O, I and l; 32-byte keys encode to 32-44 characters.
_BASE58_ADDRESS = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def is_valid_wallet(address: str) -> bool:
    return bool(_BASE58_ADDRESS.fullmatch(address or ""))


__all__ = ["is_valid_wallet"]
