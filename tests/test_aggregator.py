from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shift_pipeline.aggregator import aggregate, aggregate_receipts
from shift_pipeline.catalog import CatalogResolver, CatalogRule
from shift_pipeline.db import Base
from shift_pipeline.errors import UpstreamUnavailableError
from shift_pipeline.models import (
    CatalogEntry,
    Receipt as ReceiptRow,
    ReceiptLineItem,
    ReceiptModifier,
    ShiftCategorySummary,
    ShiftItemAggregate,
    ShiftModifierAggregate,
)
from shift_pipeline.receipts import LineItem, Modifier, Receipt
from shift_pipeline.windows import window_for

SHIFT = date(2024, 3, 1)
WINDOW = window_for(SHIFT)
AT = datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc)

RULES = [
    CatalogRule("B1", "Single Smash Burger", "burger", "beef", 1, None, 1, False, None),
    CatalogRule("B2", "Ultimate Double", "burger", "beef", 2, None, 1, False, None),
    CatalogRule("C1", "Crispy Chicken Burger", "burger", "chicken", 0, Decimal("120"), 1, False, None),
    CatalogRule("C2", "Chicken Bites", "burger", "chicken", 0, None, 0, False, None),
    CatalogRule("MD1", "Single Meal Set", "meal-set", "beef", 1, None, 1, True, "B1"),
    CatalogRule("D1", "Coke", "drink", "none", 0, None, 0, False, None),
    CatalogRule("F1", "Fries", "side", "beef", 1, None, 1, False, None),
]


def _resolver() -> CatalogResolver:
    return CatalogResolver(RULES, {"Single Smash (Thai)": "B1"})


def _receipt(receipt_id, lines, modifiers=(), refund_for=None, at=AT) -> Receipt:
    return Receipt(
        id=receipt_id,
        timestamp=at,
        refund_for=refund_for,
        line_items=tuple(
            LineItem(receipt_id, index, sku, name, Decimal(str(qty)), Decimal(str(price)), at)
            for index, (sku, name, qty, price) in enumerate(lines)
        ),
        modifiers=tuple(
            Modifier(receipt_id, line_index, modifier_id, name, Decimal(str(qty)), Decimal(str(price)))
            for line_index, modifier_id, name, qty, price in modifiers
        ),
    )


def _items(result) -> dict:
    return {totals.resolved_key: totals for totals in result.items}


def test_meal_set_absorbs_zero_priced_base_burger() -> None:
    receipts = [
        _receipt("r1", [("MD1", "Single Meal Set", 1, 249), ("B1", "Single Smash Burger", 1, 0)]),
        _receipt("r2", [("B1", "Single Smash Burger", 1, 159)]),
    ]
    result = aggregate_receipts(receipts, _resolver(), SHIFT, WINDOW)

    items = _items(result)
    assert items["B1"].quantity == 1
    assert items["MD1"].quantity == 1
    assert items["MD1"].patties == 1
    assert items["MD1"].red_meat_grams == 95
    assert result.excluded_lines == ["r1#1"]


def test_priced_base_burger_next_to_meal_set_is_counted() -> None:
    receipts = [
        _receipt("r1", [("MD1", "Single Meal Set", 1, 249), ("B1", "Single Smash Burger", 1, 159)]),
    ]
    result = aggregate_receipts(receipts, _resolver(), SHIFT, WINDOW)
    assert _items(result)["B1"].quantity == 1
    assert result.excluded_lines == []


def test_zero_priced_burger_without_meal_set_is_counted() -> None:
    receipts = [_receipt("r1", [("B1", "Single Smash Burger", 1, 0)])]
    result = aggregate_receipts(receipts, _resolver(), SHIFT, WINDOW)
    assert _items(result)["B1"].quantity == 1


def test_modifiers_count_once_per_sold_line() -> None:
    receipts = [
        _receipt(
            "r1",
            [("B1", "Single Smash Burger", 1, 159), ("B1", "Single Smash Burger", 1, 159)],
            [
                (0, "M-CHEESE", "Extra Cheese", 1, 20),
                (1, "M-CHEESE", "Extra Cheese", 1, 20),
                # delivered twice by the POS
                (1, "M-CHEESE", "Extra Cheese", 1, 20),
                (0, None, "No Onion", 1, 0),
                (0, None, "No Onion", 1, 0),
            ],
        )
    ]
    result = aggregate_receipts(receipts, _resolver(), SHIFT, WINDOW)

    modifiers = {totals.name: totals for totals in result.modifiers}
    assert modifiers["Extra Cheese"].occurrences == 2
    assert modifiers["Extra Cheese"].quantity == 2
    assert modifiers["Extra Cheese"].revenue == 40
    assert modifiers["No Onion"].occurrences == 1
    assert _items(result)["B1"].quantity == 2


def test_refund_receipts_contribute_nothing() -> None:
    receipts = [
        _receipt("r1", [("B1", "Single Smash Burger", 1, 159)]),
        _receipt("r1-refund", [("B2", "Ultimate Double", 3, 259)], [(0, "M-CHEESE", "Extra Cheese", 1, 20)], refund_for="r1"),
    ]
    result = aggregate_receipts(receipts, _resolver(), SHIFT, WINDOW)

    assert "B2" not in _items(result)
    assert result.modifiers == []
    assert result.refunds_skipped == 1
    assert result.receipts_processed == 1


def test_window_is_half_open() -> None:
    start, end = WINDOW
    receipts = [
        _receipt("first", [("B1", "Single Smash Burger", 1, 159)], at=start),
        _receipt("late", [("B1", "Single Smash Burger", 1, 159)], at=end),
    ]
    result = aggregate_receipts(receipts, _resolver(), SHIFT, WINDOW)
    assert _items(result)["B1"].quantity == 1
    assert result.receipts_processed == 1


def test_aliases_fold_into_catalog_sku() -> None:
    receipts = [
        _receipt("r1", [("B1", "Single Smash Burger", 1, 159), (None, "Single Smash (Thai)", 2, 159)]),
    ]
    result = aggregate_receipts(receipts, _resolver(), SHIFT, WINDOW)

    burger = _items(result)["B1"]
    assert burger.quantity == 3
    assert burger.rolls_consumed == 3
    assert burger.raw_hits == {"B1 :: Single Smash Burger", "no-sku :: Single Smash (Thai)"}


def test_composition_by_kind_and_category() -> None:
    receipts = [
        _receipt(
            "r1",
            [
                ("B2", "Ultimate Double", 2, 259),
                ("C1", "Crispy Chicken Burger", 2, 189),
                ("C2", "Chicken Bites", 1, 99),
                ("F1", "Fries", 4, 69),
            ],
        )
    ]
    result = aggregate_receipts(receipts, _resolver(), SHIFT, WINDOW)

    items = _items(result)
    assert items["B2"].patties == 4
    assert items["B2"].red_meat_grams == 380
    assert items["C1"].chicken_grams == 240
    assert items["C1"].rolls_consumed == 2
    assert items["C2"].chicken_grams == 100
    # sides never carry composition
    assert items["F1"].patties == 0
    assert items["F1"].rolls_consumed == 0
    assert result.categories == {"burger": Decimal("5"), "side": Decimal("4")}


def test_unmapped_items_are_reported_and_kept() -> None:
    receipts = [_receipt("r1", [(None, "Mystery Shake", 1, 60), ("ZZ1", "Secret Menu", 1, 99)])]
    result = aggregate_receipts(receipts, _resolver(), SHIFT, WINDOW)

    items = _items(result)
    assert items["Mystery Shake"].category == "other"
    assert items["ZZ1"].name == "Secret Menu"
    assert result.unmapped_labels == ["no-sku :: Mystery Shake", "ZZ1 :: Secret Menu"]


def _make_session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    return TestingSessionLocal()


def _seed(db) -> None:
    db.add_all(
        [
            CatalogEntry(sku="B1", canonical_name="Single Smash Burger", category="burger",
                         composition_kind="beef", patties_per_unit=1, rolls_per_unit=1),
            CatalogEntry(sku="MD1", canonical_name="Single Meal Set", category="meal-set",
                         composition_kind="beef", patties_per_unit=1, rolls_per_unit=1,
                         is_meal_set=True, base_sku="B1"),
            CatalogEntry(sku="D1", canonical_name="Coke", category="drink"),
        ]
    )
    db.add(ReceiptRow(id="r1", occurred_at=AT, ingested_at=AT))
    db.add_all(
        [
            ReceiptLineItem(receipt_id="r1", line_index=0, sku="MD1", raw_name="Single Meal Set",
                            quantity=Decimal("1"), unit_price=Decimal("249")),
            ReceiptLineItem(receipt_id="r1", line_index=1, sku="B1", raw_name="Single Smash Burger",
                            quantity=Decimal("1"), unit_price=Decimal("0")),
            ReceiptLineItem(receipt_id="r1", line_index=2, sku="D1", raw_name="Coke",
                            quantity=Decimal("2"), unit_price=Decimal("35")),
            ReceiptModifier(receipt_id="r1", line_index=1, modifier_id="M-CHEESE", raw_name="Extra Cheese",
                            quantity=Decimal("1"), price_impact=Decimal("20")),
        ]
    )
    db.commit()


def _snapshot(db) -> list:
    items = [
        (row.resolved_key, row.name, row.category, Decimal(row.quantity), Decimal(row.patties),
         Decimal(row.rolls_consumed), tuple(row.raw_hits))
        for row in db.query(ShiftItemAggregate).order_by(ShiftItemAggregate.resolved_key)
    ]
    modifiers = [
        (row.modifier_name, Decimal(row.quantity), row.occurrences, Decimal(row.revenue))
        for row in db.query(ShiftModifierAggregate).order_by(ShiftModifierAggregate.modifier_name)
    ]
    categories = [
        (row.category, Decimal(row.items_total))
        for row in db.query(ShiftCategorySummary).order_by(ShiftCategorySummary.category)
    ]
    return [items, modifiers, categories]


def test_aggregate_is_idempotent() -> None:
    db = _make_session()
    _seed(db)

    aggregate(db, SHIFT)
    first = _snapshot(db)
    aggregate(db, SHIFT)
    second = _snapshot(db)

    assert first == second
    assert [item[0] for item in first[0]] == ["D1", "MD1"]
    assert first[1] == [("Extra Cheese", Decimal("1"), 1, Decimal("20"))]
    assert first[2] == [("drink", Decimal("2")), ("meal-set", Decimal("1"))]
    db.close()


def test_upstream_failure_keeps_previous_rows() -> None:
    class BrokenSource:
        def fetch_receipts(self, window_start, window_end):
            raise UpstreamUnavailableError("POS API timed out")

    db = _make_session()
    _seed(db)
    aggregate(db, SHIFT)
    before = _snapshot(db)

    with pytest.raises(UpstreamUnavailableError):
        aggregate(db, SHIFT, source=BrokenSource())

    assert _snapshot(db) == before
    db.close()


def test_other_dates_are_untouched() -> None:
    db = _make_session()
    _seed(db)
    aggregate(db, SHIFT)
    aggregate(db, date(2024, 3, 2))

    assert db.query(ShiftItemAggregate).filter(ShiftItemAggregate.shift_date == SHIFT).count() == 2
    assert db.query(ShiftItemAggregate).filter(ShiftItemAggregate.shift_date == date(2024, 3, 2)).count() == 0
    db.close()
