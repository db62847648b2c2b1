from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from pharmatrace.core.errors import ValidationError


@dataclass(frozen=True)
class WalletSession:
    """
    The connected wallet of one caller.

    Passed explicitly into every lifecycle action; there is no process-wide
    "current wallet".
    """

    address: str
    vkh: str

    @classmethod
    def bind(cls, address: Optional[str], vkh: Optional[str]) -> "WalletSession":
        address = (address or "").strip()
        vkh = (vkh or "").strip().lower()
        if not address or not vkh:
            raise ValidationError("Wallet address and VKH are required (connect wallet first).")
        return cls(address=address, vkh=vkh)
