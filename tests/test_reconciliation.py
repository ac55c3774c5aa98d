from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shift_pipeline.classification import (
    DEFAULT_CLASSIFICATIONS,
    MEAT,
    ROLLS,
    UNCATEGORIZED,
    ExpenseClassifier,
    seed_default_classifications,
)
from shift_pipeline.config import Settings
from shift_pipeline.db import Base
from shift_pipeline.models import (
    PosShiftReport,
    ShiftItemAggregate,
    ShiftReconciliation,
    StaffShiftForm,
    StockPurchase,
)
from shift_pipeline.reconciliation import (
    ShiftObservation,
    build_record,
    cash_drawer_balance,
    compare_monetary,
    payment_tolerance,
    reconcile,
    stock_line,
)

SHIFT = date(2024, 3, 1)
NOW = datetime(2024, 3, 1, 21, 0, tzinfo=timezone.utc)


def test_cash_drawer_boundary() -> None:
    balanced = cash_drawer_balance(starting_cash=500, cash_sales=700, expenses=200, actual_cash=1029)
    assert balanced.expected_cash == 1000
    assert balanced.difference == 29
    assert balanced.balanced

    flagged = cash_drawer_balance(starting_cash=500, cash_sales=700, expenses=200, actual_cash=1031)
    assert flagged.difference == 31
    assert not flagged.balanced

    assert cash_drawer_balance(500, 700, 200, 970).balanced


def test_rolls_flag_on_any_variance() -> None:
    exact = stock_line(ROLLS, previous_end=10, purchased=20, sold=25, actual=5, tolerance=0)
    assert exact.expected == 5
    assert exact.variance == 0
    assert exact.status == "OK"

    short = stock_line(ROLLS, previous_end=10, purchased=20, sold=25, actual=3, tolerance=0)
    assert short.variance == -2
    assert short.status == "ALERT"


def test_meat_threshold() -> None:
    within = stock_line(MEAT, previous_end=5000, purchased=2000, sold=3800, actual=2700, tolerance=500)
    assert within.variance == -500
    assert not within.flagged

    over = stock_line(MEAT, previous_end=5000, purchased=2000, sold=3800, actual=2699, tolerance=500)
    assert over.flagged


def test_missing_count_is_pending() -> None:
    line = stock_line(ROLLS, previous_end=10, purchased=0, sold=4, actual=None, tolerance=0)
    assert line.expected == 6
    assert line.variance is None
    assert line.status == "PENDING"


def test_payment_tolerance_band() -> None:
    assert payment_tolerance(40) == 5
    assert payment_tolerance(1000) == 50
    assert payment_tolerance(-1000) == 50

    staff = ShiftObservation(source="staff", total_sales=10050, cash_banked=104, qr_banked=None)
    pos = ShiftObservation(source="pos", total_sales=10000, cash_banked=98, qr_banked=3000)
    variances, flags = compare_monetary(staff, pos)

    assert variances == {"totalSales": 50, "cashBanked": 6}
    assert len(flags) == 1
    assert flags[0].startswith("Cash banked mismatch")


def test_custom_tolerances_come_from_settings() -> None:
    config = Settings(cash_drawer_tolerance=50, cash_variance_floor=10, cash_variance_ratio=0.01)
    assert cash_drawer_balance(500, 700, 200, 1045, config).balanced
    assert payment_tolerance(2000, config) == 20


def test_record_without_sources_is_flagged() -> None:
    ledger = ShiftObservation(source="ledger")
    record = build_record(SHIFT, None, None, ledger, [])
    assert record.status == "FLAGGED"
    assert record.flags == ["Staff shift form missing", "POS shift report missing"]
    assert record.as_dict()["cashBalance"] is None


def test_classifier_is_exact_and_table_driven() -> None:
    classifier = ExpenseClassifier(DEFAULT_CLASSIFICATIONS)
    assert classifier.classify("Minced Beef (kg)") == (MEAT, Decimal("1000"))
    assert classifier.classify("  burger   BUNS ") == (ROLLS, Decimal("1"))
    assert classifier.classify("Beef jerky snack")[0] == UNCATEGORIZED
    assert classifier.classify("Bun")[0] == UNCATEGORIZED


def _make_session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    return TestingSessionLocal()


def _staff_form(shift_date: date, **values) -> StaffShiftForm:
    defaults = {
        "total_sales": 10000,
        "cash_sales": 4000,
        "qr_sales": 6000,
        "expenses_total": 1000,
        "starting_cash": 2000,
        "closing_cash": 5000,
        "cash_banked": 3000,
        "qr_banked": 6000,
        "submitted_at": NOW,
    }
    defaults.update(values)
    return StaffShiftForm(shift_date=shift_date, **defaults)


def _aggregate(key: str, category: str, quantity, rolls=0, meat=0) -> ShiftItemAggregate:
    return ShiftItemAggregate(
        shift_date=SHIFT,
        resolved_key=key,
        sku=key,
        name=key,
        category=category,
        quantity=Decimal(str(quantity)),
        rolls_consumed=Decimal(str(rolls)),
        red_meat_grams=Decimal(str(meat)),
        raw_hits=[],
        window_start=datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc),
        window_end=datetime(2024, 3, 1, 20, 0, tzinfo=timezone.utc),
    )


def test_reconcile_three_sources() -> None:
    db = _make_session()
    seed_default_classifications(db)
    db.add(_staff_form(date(2024, 2, 29), rolls_end=10, meat_end_grams=Decimal("5000"), drinks_end=30))
    db.add(_staff_form(SHIFT, rolls_end=3, meat_end_grams=Decimal("4000"), drinks_end=20))
    db.add(
        PosShiftReport(
            shift_date=SHIFT,
            total_sales=Decimal("10000"),
            cash_sales=Decimal("4000"),
            qr_sales=Decimal("6000"),
            expenses_total=Decimal("1000"),
            starting_cash=Decimal("2000"),
            expected_cash=Decimal("5000"),
            actual_cash=Decimal("5000"),
            cash_banked=Decimal("3000"),
            qr_banked=Decimal("6000"),
            received_at=NOW,
        )
    )
    db.add_all(
        [
            StockPurchase(shift_date=SHIFT, item_label="Burger Buns (pack of 6)", quantity=Decimal("3"), amount=Decimal("300")),
            StockPurchase(shift_date=SHIFT, item_label="Burger Buns", quantity=Decimal("2"), amount=Decimal("40")),
            StockPurchase(shift_date=SHIFT, item_label="Minced Beef (kg)", quantity=Decimal("2"), amount=Decimal("700")),
            StockPurchase(shift_date=SHIFT, item_label="Napkins", quantity=Decimal("1"), amount=Decimal("50")),
        ]
    )
    db.add_all(
        [
            _aggregate("B1", "burger", 25, rolls=25, meat=2375),
            _aggregate("D1", "drink", 10),
        ]
    )
    db.commit()

    record = reconcile(db, SHIFT, cache=True)
    data = record.as_dict()

    stock = {line["item"]: line for line in data["stock"]}
    # 10 + 20 - 25
    assert stock["rolls"]["expected"] == 5
    assert stock["rolls"]["variance"] == -2
    assert stock["rolls"]["status"] == "ALERT"
    # 5000 + 2000 - 2375
    assert stock["meat"]["expected"] == 4625
    assert stock["meat"]["status"] == "ALERT"
    assert stock["drinks"]["expected"] == 20
    assert stock["drinks"]["status"] == "OK"

    assert data["status"] == "FLAGGED"
    assert data["variances"]["totalSales"] == 0
    assert data["cashBalance"]["balanced"] is True
    assert data["ledger"]["expensesTotal"] == 1090
    assert data["pos"]["rolls"] == 25
    assert len(data["flags"]) == 2

    cached = db.get(ShiftReconciliation, SHIFT)
    assert cached.status == "FLAGGED"
    assert cached.record["stock"][0]["item"] == "rolls"
    db.close()


def test_reconcile_without_aggregates_or_previous_counts() -> None:
    db = _make_session()
    db.add(_staff_form(SHIFT, rolls_end=0))
    db.commit()

    record = reconcile(db, SHIFT)

    assert "POS shift report missing" in record.flags
    assert any("aggregates missing" in flag for flag in record.flags)
    rolls = record.stock[0]
    assert rolls.previous_end == 0
    assert rolls.variance == 0
    # no meat or drinks counted on the form
    assert record.stock[1].status == "PENDING"
    assert record.stock[2].status == "PENDING"
    assert db.get(ShiftReconciliation, SHIFT) is None
    db.close()
