"""Per-shift item and modifier aggregation.

This module is the only writer of ``shift_item_aggregate``,
``shift_modifier_aggregate`` and ``shift_category_summary``. A rebuild replaces
every row of a shift date in one transaction; rows are never patched.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from shift_pipeline.catalog import CatalogResolver, CatalogRule, UnmappedItem
from shift_pipeline.config import Settings, settings
from shift_pipeline.models import ShiftCategorySummary, ShiftItemAggregate, ShiftModifierAggregate
from shift_pipeline.receipts import DatabaseReceiptSource, LineItem, Receipt, ReceiptSource
from shift_pipeline.windows import window_for

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
# Categories whose catalog composition contributes patties, meat and rolls.
COMPOSED_CATEGORIES = ("burger", "meal-set")


@dataclass
class ItemTotals:
    resolved_key: str
    sku: Optional[str]
    name: str
    category: str
    quantity: Decimal = ZERO
    patties: Decimal = ZERO
    red_meat_grams: Decimal = ZERO
    chicken_grams: Decimal = ZERO
    rolls_consumed: Decimal = ZERO
    raw_hits: set[str] = field(default_factory=set)

    def as_dict(self) -> dict:
        return {
            "resolved_key": self.resolved_key,
            "sku": self.sku,
            "name": self.name,
            "category": self.category,
            "quantity": float(self.quantity),
            "patties": float(self.patties),
            "red_meat_grams": float(self.red_meat_grams),
            "chicken_grams": float(self.chicken_grams),
            "rolls_consumed": float(self.rolls_consumed),
            "raw_hits": sorted(self.raw_hits),
        }


@dataclass
class ModifierTotals:
    name: str
    quantity: Decimal = ZERO
    occurrences: int = 0
    revenue: Decimal = ZERO

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "quantity": float(self.quantity),
            "occurrences": self.occurrences,
            "revenue": float(self.revenue),
        }


@dataclass
class AggregationResult:
    shift_date: date
    window_start: datetime
    window_end: datetime
    items: list[ItemTotals]
    modifiers: list[ModifierTotals]
    categories: dict[str, Decimal]
    unmapped: list[UnmappedItem]
    receipts_processed: int = 0
    refunds_skipped: int = 0
    excluded_lines: list[str] = field(default_factory=list)

    @property
    def unmapped_labels(self) -> list[str]:
        return [item.describe() for item in self.unmapped]


def meal_set_exclusions(receipt: Receipt, resolver: CatalogResolver) -> set[str]:
    """Line keys of zero-priced base burgers absorbed by a meal set on the same receipt."""
    base_skus = set()
    for line in receipt.line_items:
        rule = resolver.resolve(line.sku, line.raw_name)
        if rule is not None and rule.is_meal_set and rule.base_sku:
            base_skus.add(rule.base_sku)
    if not base_skus:
        return set()
    return {
        line.key
        for line in receipt.line_items
        if line.sku in base_skus and line.unit_price == ZERO
    }


def resolved_key(line: LineItem, rule: Optional[CatalogRule]) -> str:
    if rule is not None:
        return rule.sku
    return line.sku or line.raw_name


def _apply_composition(totals: ItemTotals, rule: CatalogRule, qty: Decimal, config: Settings) -> None:
    if rule.category not in COMPOSED_CATEGORIES:
        return
    if rule.composition_kind == "beef":
        patties = rule.patties_per_unit * qty
        totals.patties += patties
        totals.red_meat_grams += patties * config.beef_grams_per_patty
    elif rule.composition_kind == "chicken":
        grams = rule.grams_per_unit
        if grams is None:
            grams = Decimal(config.default_chicken_grams_per_unit)
        totals.chicken_grams += grams * qty
    totals.rolls_consumed += rule.rolls_per_unit * qty


def _modifier_key(receipt_id: str, base_line_key: str, modifier_id: Optional[str], name: str) -> tuple[str, str, str]:
    return (receipt_id, base_line_key, modifier_id or f"name:{name}")


def aggregate_receipts(
    receipts: Iterable[Receipt],
    resolver: CatalogResolver,
    shift_date: date,
    window: tuple[datetime, datetime],
    config: Settings = settings,
) -> AggregationResult:
    """Aggregate receipts of one shift without touching the database."""
    window_start, window_end = window
    items: dict[str, ItemTotals] = {}
    seen_modifiers: dict[tuple[str, str, str], tuple[str, Decimal, Decimal]] = {}
    excluded: list[str] = []
    processed = 0
    refunds = 0

    for receipt in receipts:
        if not (window_start <= receipt.timestamp < window_end):
            continue
        if receipt.is_refund:
            refunds += 1
            continue
        processed += 1
        skip = meal_set_exclusions(receipt, resolver)
        excluded.extend(sorted(skip))

        for line in receipt.line_items:
            if line.key in skip:
                continue
            rule = resolver.resolve(line.sku, line.raw_name)
            key = resolved_key(line, rule)
            totals = items.get(key)
            if totals is None:
                totals = ItemTotals(
                    resolved_key=key,
                    sku=rule.sku if rule is not None else line.sku,
                    name=rule.canonical_name if rule is not None else line.raw_name,
                    category=rule.category if rule is not None else "other",
                )
                items[key] = totals
            totals.quantity += line.quantity
            totals.raw_hits.add(f"{line.sku or 'no-sku'} :: {line.raw_name}")
            if rule is not None:
                _apply_composition(totals, rule, line.quantity, config)

        for modifier in receipt.modifiers:
            key = _modifier_key(receipt.id, modifier.base_line_key, modifier.modifier_id, modifier.raw_name)
            if key not in seen_modifiers:
                seen_modifiers[key] = (modifier.raw_name, modifier.quantity, modifier.price_impact)

    modifiers: dict[str, ModifierTotals] = {}
    for name, quantity, price_impact in seen_modifiers.values():
        totals = modifiers.setdefault(name, ModifierTotals(name=name))
        totals.quantity += quantity
        totals.occurrences += 1
        totals.revenue += price_impact

    categories: dict[str, Decimal] = {}
    for totals in items.values():
        categories[totals.category] = categories.get(totals.category, ZERO) + totals.quantity

    return AggregationResult(
        shift_date=shift_date,
        window_start=window_start,
        window_end=window_end,
        items=sorted(items.values(), key=lambda t: (t.category, t.name, t.resolved_key)),
        modifiers=sorted(modifiers.values(), key=lambda m: m.name),
        categories=dict(sorted(categories.items())),
        unmapped=resolver.unmapped,
        receipts_processed=processed,
        refunds_skipped=refunds,
        excluded_lines=excluded,
    )


def _replace_shift_aggregates(db: Session, result: AggregationResult) -> None:
    shift_date = result.shift_date
    db.query(ShiftItemAggregate).filter(ShiftItemAggregate.shift_date == shift_date).delete(
        synchronize_session=False
    )
    db.query(ShiftModifierAggregate).filter(ShiftModifierAggregate.shift_date == shift_date).delete(
        synchronize_session=False
    )
    db.query(ShiftCategorySummary).filter(ShiftCategorySummary.shift_date == shift_date).delete(
        synchronize_session=False
    )
    db.add_all(
        ShiftItemAggregate(
            shift_date=shift_date,
            resolved_key=totals.resolved_key,
            sku=totals.sku,
            name=totals.name,
            category=totals.category,
            quantity=totals.quantity,
            patties=totals.patties,
            red_meat_grams=totals.red_meat_grams,
            chicken_grams=totals.chicken_grams,
            rolls_consumed=totals.rolls_consumed,
            raw_hits=sorted(totals.raw_hits),
            window_start=result.window_start,
            window_end=result.window_end,
        )
        for totals in result.items
    )
    db.add_all(
        ShiftModifierAggregate(
            shift_date=shift_date,
            modifier_name=totals.name,
            quantity=totals.quantity,
            occurrences=totals.occurrences,
            revenue=totals.revenue,
        )
        for totals in result.modifiers
    )
    db.add_all(
        ShiftCategorySummary(shift_date=shift_date, category=category, items_total=total)
        for category, total in result.categories.items()
    )
    db.flush()


def aggregate(
    db: Session,
    shift_date: date,
    source: Optional[ReceiptSource] = None,
    resolver: Optional[CatalogResolver] = None,
    config: Settings = settings,
    commit: bool = True,
) -> AggregationResult:
    """Rebuild the item and modifier aggregates of ``shift_date``.

    Receipts are fetched before anything is deleted, so an unreachable source
    (``UpstreamUnavailableError``) leaves the previous rows in place. With
    ``commit=False`` the caller owns the transaction.
    """
    window = window_for(shift_date, config)
    source = source or DatabaseReceiptSource(db)
    resolver = resolver or CatalogResolver.from_db(db)

    receipts = source.fetch_receipts(*window)
    result = aggregate_receipts(receipts, resolver, shift_date, window, config)

    try:
        _replace_shift_aggregates(db, result)
        if commit:
            db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "aggregated %s: %d receipts, %d items, %d modifiers, %d unmapped, %d meal-set lines excluded",
        shift_date.isoformat(),
        result.receipts_processed,
        len(result.items),
        len(result.modifiers),
        len(result.unmapped),
        len(result.excluded_lines),
    )
    return result
