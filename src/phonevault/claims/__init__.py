"""Claim links."""

from phonevault.claims.registry import ClaimLinkRegistry, ClaimView

__all__ = ["ClaimLinkRegistry", "ClaimView"]
