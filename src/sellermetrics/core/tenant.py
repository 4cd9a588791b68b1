"""Tenant scoping for every reconciliation read and write."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class TenantScope:
    """Capability object identifying the seller whose rows may be touched.

    Every facade method that reads or writes seller data takes one of these
    explicitly and filters on ``user_id``. There is no cross-tenant access.
    """

    user_id: str

    def __post_init__(self) -> None:
        if not self.user_id or not self.user_id.strip():
            raise ValueError("TenantScope requires a non-empty user_id")

    def __str__(self) -> str:
        return self.user_id
