"""Exact-match resolution of POS SKUs and names onto catalog entries."""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from shift_pipeline.models import CatalogAlias, CatalogEntry

logger = logging.getLogger(__name__)

CATEGORIES = ("burger", "side", "drink", "meal-set", "modifier", "other")
COMPOSITION_KINDS = ("beef", "chicken", "none")


@dataclass(frozen=True)
class CatalogRule:
    sku: str
    canonical_name: str
    category: str
    composition_kind: str
    patties_per_unit: int
    grams_per_unit: Optional[Decimal]
    rolls_per_unit: int
    is_meal_set: bool
    base_sku: Optional[str]

    @classmethod
    def from_entry(cls, entry: CatalogEntry) -> "CatalogRule":
        return cls(
            sku=entry.sku,
            canonical_name=entry.canonical_name,
            category=entry.category,
            composition_kind=entry.composition_kind or "none",
            patties_per_unit=entry.patties_per_unit or 0,
            grams_per_unit=Decimal(entry.grams_per_unit) if entry.grams_per_unit is not None else None,
            rolls_per_unit=entry.rolls_per_unit or 0,
            is_meal_set=bool(entry.is_meal_set),
            base_sku=entry.base_sku,
        )


@dataclass(frozen=True, order=True)
class UnmappedItem:
    sku: Optional[str]
    raw_name: str

    def describe(self) -> str:
        return f"{self.sku or 'no-sku'} :: {self.raw_name}"


class CatalogResolver:
    """Maps ``(sku, raw_name)`` to a :class:`CatalogRule`.

    Resolution is exact SKU first, then an exact alias on the raw name. Names
    are never normalised or fuzzy matched; anything else is unmapped and
    remembered for operator review.
    """

    def __init__(self, rules: Iterable[CatalogRule], aliases: Optional[dict[str, str]] = None):
        self._by_sku = {rule.sku: rule for rule in rules}
        self._aliases = dict(aliases or {})
        self._unmapped: set[UnmappedItem] = set()

    @classmethod
    def from_db(cls, db: Session) -> "CatalogResolver":
        entries = db.query(CatalogEntry).filter(CatalogEntry.is_active.is_(True)).all()
        aliases = {row.raw_name: row.sku for row in db.query(CatalogAlias).all()}
        return cls([CatalogRule.from_entry(entry) for entry in entries], aliases)

    def by_sku(self, sku: Optional[str]) -> Optional[CatalogRule]:
        if sku is None:
            return None
        return self._by_sku.get(sku)

    def resolve(self, sku: Optional[str], raw_name: str) -> Optional[CatalogRule]:
        rule = self.by_sku(sku)
        if rule is not None:
            return rule
        alias_sku = self._aliases.get(raw_name)
        if alias_sku is not None:
            rule = self._by_sku.get(alias_sku)
            if rule is not None:
                return rule
        item = UnmappedItem(sku=sku, raw_name=raw_name)
        if item not in self._unmapped:
            logger.warning("unmapped catalog item %s", item.describe())
            self._unmapped.add(item)
        return None

    @property
    def unmapped(self) -> list[UnmappedItem]:
        return sorted(self._unmapped, key=lambda item: (item.sku or "", item.raw_name))
