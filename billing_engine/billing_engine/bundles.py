"""Add-on bundle catalog for SMS credits and call minutes.

A *bundle* is a fixed package of credits (or minutes) sold at a fixed
price.  Workspaces pick a bundle for manual purchases and for
auto-replenishment.  Prices are stored in integer cents.

Call-minute balances are persisted in seconds; the helpers at the bottom of
this module convert between the two units.  Threshold comparisons use
whole minutes (floor) while usage billing rounds partial minutes up.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum


class CreditType(str, Enum):
    """Kind of prepaid balance a workspace holds."""

    SMS = "sms_credits"
    MINUTES = "call_minutes"


class BundleName(str, Enum):
    """Bundle sizes offered for every credit type."""

    STARTER = "starter"
    GROWTH = "growth"
    PRO = "pro"


class UnknownBundleError(ValueError):
    """Raised when a (credit type, bundle) pair is not in the catalog."""


@dataclass(frozen=True)
class Bundle:
    """A purchasable package of credits or minutes."""

    name: BundleName
    credit_type: CreditType
    quantity: int
    price_cents: int

    @property
    def unit_price_cents(self) -> float:
        """Price per credit (or per minute) in cents."""
        return self.price_cents / self.quantity

    @property
    def unit_label(self) -> str:
        return "credits" if self.credit_type == CreditType.SMS else "minutes"


DEFAULT_BUNDLES: tuple[Bundle, ...] = (
    Bundle(BundleName.STARTER, CreditType.SMS, quantity=500, price_cents=1000),
    Bundle(BundleName.GROWTH, CreditType.SMS, quantity=2000, price_cents=3500),
    Bundle(BundleName.PRO, CreditType.SMS, quantity=10000, price_cents=15000),
    Bundle(BundleName.STARTER, CreditType.MINUTES, quantity=100, price_cents=500),
    Bundle(BundleName.GROWTH, CreditType.MINUTES, quantity=500, price_cents=2000),
    Bundle(BundleName.PRO, CreditType.MINUTES, quantity=2000, price_cents=6500),
)


class BundleCatalog:
    """Lookup table of bundles keyed by ``(credit_type, bundle_name)``.

    Parameters
    ----------
    bundles:
        Bundles to register.  Defaults to :data:`DEFAULT_BUNDLES`.
    """

    def __init__(self, bundles: Iterable[Bundle] = DEFAULT_BUNDLES) -> None:
        self._bundles: dict[tuple[CreditType, BundleName], Bundle] = {}
        for bundle in bundles:
            self._bundles[(bundle.credit_type, bundle.name)] = bundle

    def get(self, credit_type: CreditType | str, name: BundleName | str) -> Bundle:
        """Return the bundle for *credit_type* and *name*.

        Raises
        ------
        UnknownBundleError
            If either value is not recognised or the pair is not registered.
        """
        try:
            key = (CreditType(credit_type), BundleName(name))
        except ValueError as exc:
            raise UnknownBundleError(f"Unknown bundle {name!r} for {credit_type!r}") from exc

        bundle = self._bundles.get(key)
        if bundle is None:
            raise UnknownBundleError(f"Unknown bundle {key[1].value!r} for {key[0].value!r}")
        return bundle

    def list(self, credit_type: CreditType | None = None) -> list[Bundle]:
        """Return all bundles, optionally restricted to one credit type."""
        bundles = list(self._bundles.values())
        if credit_type is not None:
            bundles = [b for b in bundles if b.credit_type == credit_type]
        return sorted(bundles, key=lambda b: (b.credit_type.value, b.price_cents))


default_catalog = BundleCatalog()


# ---------------------------------------------------------------------------
# Unit helpers
# ---------------------------------------------------------------------------

# MMS messages are billed at a flat rate regardless of segment count.
MMS_CREDIT_COST = 3


def seconds_to_whole_minutes(seconds: int) -> int:
    """Convert a stored seconds balance to whole minutes (rounded down)."""
    return seconds // 60


def billable_minutes(seconds: int) -> int:
    """Minutes charged for a call of *seconds* duration (rounded up)."""
    return math.ceil(seconds / 60)


def minutes_to_seconds(minutes: int) -> int:
    return minutes * 60


def sms_credits_for(segments: int, is_mms: bool) -> int:
    """Credits consumed by one message: one per segment, flat rate for MMS."""
    if is_mms:
        return MMS_CREDIT_COST
    return max(segments, 1)


def format_price(cents: int | float) -> str:
    """Render a cents amount as a USD string, e.g. ``1000`` -> ``$10.00``."""
    return f"${cents / 100:,.2f}"
