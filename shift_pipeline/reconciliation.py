"""Three-way shift reconciliation.

Compares what staff declared on the shift form, what the POS reports, and
what the stock ledger implies, and turns every breached tolerance into a
human-readable flag. Out-of-tolerance values are normal output, never errors.
The derived aggregate tables are only read here.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from shift_pipeline.classification import DRINKS, MEAT, ROLLS, ExpenseClassifier
from shift_pipeline.config import Settings, settings
from shift_pipeline.models import (
    PosShiftReport,
    ShiftItemAggregate,
    ShiftReconciliation,
    StaffShiftForm,
    StockPurchase,
)

logger = logging.getLogger(__name__)

BALANCED = "BALANCED"
FLAGGED = "FLAGGED"

# field name -> observation attribute; compared as staff minus POS
MONETARY_FIELDS = {
    "totalSales": "total_sales",
    "cashBanked": "cash_banked",
    "qrBanked": "qr_banked",
    "closingCash": "closing_cash",
}
FIELD_LABELS = {
    "totalSales": "Total sales",
    "cashBanked": "Cash banked",
    "qrBanked": "QR banked",
    "closingCash": "Closing cash",
}


def _num(value) -> Optional[float]:
    if value is None:
        return None
    return float(value)


@dataclass
class ShiftObservation:
    source: str
    total_sales: Optional[float] = None
    cash_sales: Optional[float] = None
    qr_sales: Optional[float] = None
    expenses_total: Optional[float] = None
    starting_cash: Optional[float] = None
    cash_banked: Optional[float] = None
    qr_banked: Optional[float] = None
    closing_cash: Optional[float] = None
    rolls: Optional[float] = None
    meat_grams: Optional[float] = None
    drinks: Optional[float] = None

    def as_dict(self) -> dict:
        return {
            "source": self.source,
            "totalSales": self.total_sales,
            "cashSales": self.cash_sales,
            "qrSales": self.qr_sales,
            "expensesTotal": self.expenses_total,
            "startingCash": self.starting_cash,
            "cashBanked": self.cash_banked,
            "qrBanked": self.qr_banked,
            "closingCash": self.closing_cash,
            "rolls": self.rolls,
            "meatGrams": self.meat_grams,
            "drinks": self.drinks,
        }


@dataclass
class CashBalance:
    starting_cash: float
    cash_sales: float
    expenses: float
    expected_cash: float
    actual_cash: float
    difference: float
    tolerance: float
    balanced: bool

    def as_dict(self) -> dict:
        return {
            "startingCash": self.starting_cash,
            "cashSales": self.cash_sales,
            "expenses": self.expenses,
            "expectedCash": self.expected_cash,
            "actualCash": self.actual_cash,
            "difference": self.difference,
            "tolerance": self.tolerance,
            "balanced": self.balanced,
        }


@dataclass
class StockLine:
    item: str
    previous_end: float
    purchased: float
    sold: float
    expected: float
    actual: Optional[float]
    variance: Optional[float]
    tolerance: float
    flagged: bool

    @property
    def status(self) -> str:
        if self.actual is None:
            return "PENDING"
        return "ALERT" if self.flagged else "OK"

    def as_dict(self) -> dict:
        return {
            "item": self.item,
            "previousEnd": self.previous_end,
            "purchased": self.purchased,
            "sold": self.sold,
            "expected": self.expected,
            "actual": self.actual,
            "variance": self.variance,
            "tolerance": self.tolerance,
            "status": self.status,
        }


@dataclass
class ReconciliationRecord:
    shift_date: date
    staff: Optional[ShiftObservation]
    pos: Optional[ShiftObservation]
    ledger: ShiftObservation
    variances: dict[str, float] = field(default_factory=dict)
    flags: list[str] = field(default_factory=list)
    cash_balance: Optional[CashBalance] = None
    stock: list[StockLine] = field(default_factory=list)

    @property
    def status(self) -> str:
        return FLAGGED if self.flags else BALANCED

    def as_dict(self) -> dict:
        return {
            "date": self.shift_date.isoformat(),
            "status": self.status,
            "staff": self.staff.as_dict() if self.staff else None,
            "pos": self.pos.as_dict() if self.pos else None,
            "ledger": self.ledger.as_dict(),
            "variances": dict(self.variances),
            "flags": list(self.flags),
            "cashBalance": self.cash_balance.as_dict() if self.cash_balance else None,
            "stock": [line.as_dict() for line in self.stock],
        }


def payment_tolerance(pos_value: float, config: Settings = settings) -> float:
    return max(config.cash_variance_floor, abs(pos_value) * config.cash_variance_ratio)


def compare_monetary(
    staff: ShiftObservation, pos: ShiftObservation, config: Settings = settings
) -> tuple[dict[str, float], list[str]]:
    variances: dict[str, float] = {}
    flags: list[str] = []
    for field_name, attr in MONETARY_FIELDS.items():
        staff_value = getattr(staff, attr)
        pos_value = getattr(pos, attr)
        if staff_value is None or pos_value is None:
            continue
        variance = round(staff_value - pos_value, 2)
        variances[field_name] = variance
        tolerance = payment_tolerance(pos_value, config)
        if abs(variance) > tolerance:
            flags.append(
                f"{FIELD_LABELS[field_name]} mismatch: staff {staff_value:.2f} vs POS {pos_value:.2f} "
                f"(variance {variance:+.2f}, tolerance {tolerance:.2f})"
            )
    return variances, flags


def cash_drawer_balance(
    starting_cash: float,
    cash_sales: float,
    expenses: float,
    actual_cash: float,
    config: Settings = settings,
) -> CashBalance:
    expected_cash = starting_cash + cash_sales - expenses
    difference = round(actual_cash - expected_cash, 2)
    return CashBalance(
        starting_cash=starting_cash,
        cash_sales=cash_sales,
        expenses=expenses,
        expected_cash=expected_cash,
        actual_cash=actual_cash,
        difference=difference,
        tolerance=config.cash_drawer_tolerance,
        balanced=abs(difference) <= config.cash_drawer_tolerance,
    )


def stock_line(
    item: str,
    previous_end: float,
    purchased: float,
    sold: float,
    actual: Optional[float],
    tolerance: float,
) -> StockLine:
    expected = previous_end + purchased - sold
    variance = None if actual is None else round(actual - expected, 2)
    return StockLine(
        item=item,
        previous_end=previous_end,
        purchased=purchased,
        sold=sold,
        expected=expected,
        actual=actual,
        variance=variance,
        tolerance=tolerance,
        flagged=variance is not None and abs(variance) > tolerance,
    )


def build_record(
    shift_date: date,
    staff: Optional[ShiftObservation],
    pos: Optional[ShiftObservation],
    ledger: ShiftObservation,
    stock: list[StockLine],
    config: Settings = settings,
) -> ReconciliationRecord:
    record = ReconciliationRecord(shift_date=shift_date, staff=staff, pos=pos, ledger=ledger, stock=stock)
    if staff is None:
        record.flags.append("Staff shift form missing")
    if pos is None:
        record.flags.append("POS shift report missing")

    if staff is not None and pos is not None:
        variances, flags = compare_monetary(staff, pos, config)
        record.variances.update(variances)
        record.flags.extend(flags)

    if staff is not None and staff.closing_cash is not None:
        balance = cash_drawer_balance(
            staff.starting_cash or 0.0,
            staff.cash_sales or 0.0,
            staff.expenses_total or 0.0,
            staff.closing_cash,
            config,
        )
        record.cash_balance = balance
        record.variances["cashDrawer"] = balance.difference
        if not balance.balanced:
            record.flags.append(
                f"Cash drawer not balanced: expected {balance.expected_cash:.2f}, "
                f"counted {balance.actual_cash:.2f} (difference {balance.difference:+.2f}, "
                f"tolerance {balance.tolerance:.2f})"
            )

    variance_keys = {ROLLS: "rolls", MEAT: "meatGrams", DRINKS: "drinks"}
    for line in stock:
        if line.variance is None:
            continue
        record.variances[variance_keys.get(line.item, line.item)] = line.variance
        if line.flagged:
            record.flags.append(
                f"{line.item.capitalize()} variance {line.variance:+g}: expected {line.expected:g}, "
                f"counted {line.actual:g} (previous end {line.previous_end:g}, "
                f"purchased {line.purchased:g}, sold {line.sold:g})"
            )
    return record


def _staff_form(db: Session, shift_date: date) -> Optional[StaffShiftForm]:
    return db.query(StaffShiftForm).filter(StaffShiftForm.shift_date == shift_date).first()


def load_staff_observation(db: Session, shift_date: date) -> Optional[ShiftObservation]:
    form = _staff_form(db, shift_date)
    if form is None:
        return None
    return ShiftObservation(
        source="staff",
        total_sales=_num(form.total_sales),
        cash_sales=_num(form.cash_sales),
        qr_sales=_num(form.qr_sales),
        expenses_total=_num(form.expenses_total),
        starting_cash=_num(form.starting_cash),
        cash_banked=_num(form.cash_banked),
        qr_banked=_num(form.qr_banked),
        closing_cash=_num(form.closing_cash),
        rolls=_num(form.rolls_end),
        meat_grams=_num(form.meat_end_grams),
        drinks=_num(form.drinks_end),
    )


def load_sold_usage(db: Session, shift_date: date) -> Optional[dict[str, float]]:
    """Rolls, beef grams and drinks sold according to the item aggregates."""
    rolls, meat, rows = db.query(
        func.sum(ShiftItemAggregate.rolls_consumed),
        func.sum(ShiftItemAggregate.red_meat_grams),
        func.count(ShiftItemAggregate.id),
    ).filter(ShiftItemAggregate.shift_date == shift_date).one()
    if not rows:
        return None
    drinks = db.query(func.sum(ShiftItemAggregate.quantity)).filter(
        ShiftItemAggregate.shift_date == shift_date,
        ShiftItemAggregate.category == "drink",
    ).scalar()
    return {ROLLS: _num(rolls) or 0.0, MEAT: _num(meat) or 0.0, DRINKS: _num(drinks) or 0.0}


def load_pos_observation(
    db: Session, shift_date: date, sold: Optional[dict[str, float]]
) -> Optional[ShiftObservation]:
    report = db.query(PosShiftReport).filter(PosShiftReport.shift_date == shift_date).first()
    if report is None:
        return None
    sold = sold or {}
    return ShiftObservation(
        source="pos",
        total_sales=_num(report.total_sales),
        cash_sales=_num(report.cash_sales),
        qr_sales=_num(report.qr_sales),
        expenses_total=_num(report.expenses_total),
        starting_cash=_num(report.starting_cash),
        cash_banked=_num(report.cash_banked),
        qr_banked=_num(report.qr_banked),
        closing_cash=_num(report.actual_cash),
        rolls=sold.get(ROLLS),
        meat_grams=sold.get(MEAT),
        drinks=sold.get(DRINKS),
    )


def load_stock_lines(
    db: Session,
    shift_date: date,
    staff: Optional[ShiftObservation],
    sold: Optional[dict[str, float]],
    classifier: ExpenseClassifier,
    config: Settings = settings,
) -> tuple[ShiftObservation, list[StockLine]]:
    purchases = db.query(StockPurchase).filter(StockPurchase.shift_date == shift_date).all()
    purchased = classifier.purchased_totals(purchases)
    amounts = [float(p.amount) for p in purchases if p.amount is not None]

    previous = _staff_form(db, shift_date - timedelta(days=1))
    previous_end = {
        ROLLS: _num(previous.rolls_end) if previous else None,
        MEAT: _num(previous.meat_end_grams) if previous else None,
        DRINKS: _num(previous.drinks_end) if previous else None,
    }
    actual = {
        ROLLS: staff.rolls if staff else None,
        MEAT: staff.meat_grams if staff else None,
        DRINKS: staff.drinks if staff else None,
    }
    tolerances = {
        ROLLS: float(config.rolls_variance_tolerance),
        MEAT: float(config.meat_variance_tolerance_grams),
        DRINKS: float(config.drinks_variance_tolerance),
    }
    sold = sold or {}
    lines = [
        stock_line(
            item,
            previous_end[item] or 0.0,
            float(purchased[item]),
            sold.get(item, 0.0),
            actual[item],
            tolerances[item],
        )
        for item in (ROLLS, MEAT, DRINKS)
    ]
    ledger = ShiftObservation(
        source="ledger",
        expenses_total=sum(amounts) if amounts else None,
        rolls=lines[0].expected,
        meat_grams=lines[1].expected,
        drinks=lines[2].expected,
    )
    return ledger, lines


def reconcile(
    db: Session,
    shift_date: date,
    config: Settings = settings,
    classifier: Optional[ExpenseClassifier] = None,
    cache: bool = False,
) -> ReconciliationRecord:
    """Re-derive the reconciliation record of ``shift_date`` from its sources."""
    classifier = classifier or ExpenseClassifier.from_db(db)
    staff = load_staff_observation(db, shift_date)
    sold = load_sold_usage(db, shift_date)
    pos = load_pos_observation(db, shift_date, sold)
    ledger, stock = load_stock_lines(db, shift_date, staff, sold, classifier, config)

    record = build_record(shift_date, staff, pos, ledger, stock, config)
    if sold is None:
        record.flags.append("POS item aggregates missing; rebuild the shift first")

    if cache:
        _cache_record(db, record)
    logger.info("reconciled %s: %s with %d flags", shift_date.isoformat(), record.status, len(record.flags))
    return record


def _cache_record(db: Session, record: ReconciliationRecord) -> None:
    try:
        db.query(ShiftReconciliation).filter(ShiftReconciliation.shift_date == record.shift_date).delete(
            synchronize_session=False
        )
        db.add(
            ShiftReconciliation(
                shift_date=record.shift_date,
                status=record.status,
                record=record.as_dict(),
                created_at=datetime.now(timezone.utc),
            )
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
