"""Classification of purchase lines into physical stock categories.

Lookups go through the ``expense_classification`` table keyed by item label
(compared case-insensitively with collapsed whitespace). Labels that are not
in the table are ``uncategorized``; descriptions are never substring matched.
This is separate from catalog resolution, which stays exact.
"""

import logging
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from shift_pipeline.models import ExpenseClassification, StockPurchase

logger = logging.getLogger(__name__)

ROLLS = "rolls"
MEAT = "meat"
DRINKS = "drinks"
UNCATEGORIZED = "uncategorized"
STOCK_CATEGORIES = (ROLLS, MEAT, DRINKS)

# label -> (stock category, units per purchased item); meat is tracked in grams.
DEFAULT_CLASSIFICATIONS: dict[str, tuple[str, Decimal]] = {
    "burger buns": (ROLLS, Decimal("1")),
    "burger buns (pack of 6)": (ROLLS, Decimal("6")),
    "brioche rolls": (ROLLS, Decimal("1")),
    "minced beef (g)": (MEAT, Decimal("1")),
    "minced beef (kg)": (MEAT, Decimal("1000")),
    "topside beef (kg)": (MEAT, Decimal("1000")),
    "coke can": (DRINKS, Decimal("1")),
    "coke zero can": (DRINKS, Decimal("1")),
    "sprite can": (DRINKS, Decimal("1")),
    "soda water": (DRINKS, Decimal("1")),
    "bottled water": (DRINKS, Decimal("1")),
}


def normalize_label(label: str) -> str:
    return " ".join(label.split()).casefold()


class ExpenseClassifier:
    def __init__(self, rules: dict[str, tuple[str, Decimal]]):
        self._rules = {normalize_label(label): rule for label, rule in rules.items()}

    @classmethod
    def from_db(cls, db: Session) -> "ExpenseClassifier":
        rows = db.query(ExpenseClassification).all()
        return cls({row.item_label: (row.stock_category, Decimal(row.units_per_item)) for row in rows})

    def classify(self, label: str) -> tuple[str, Decimal]:
        rule = self._rules.get(normalize_label(label))
        if rule is None:
            return UNCATEGORIZED, Decimal("1")
        return rule

    def purchased_totals(self, purchases: Iterable[StockPurchase]) -> dict[str, Decimal]:
        totals = {category: Decimal("0") for category in STOCK_CATEGORIES}
        totals[UNCATEGORIZED] = Decimal("0")
        for purchase in purchases:
            category, factor = self.classify(purchase.item_label)
            if category == UNCATEGORIZED:
                logger.debug("uncategorized purchase %r", purchase.item_label)
            totals[category] = totals.get(category, Decimal("0")) + Decimal(purchase.quantity) * factor
        return totals


def seed_default_classifications(db: Session, rules: Optional[dict[str, tuple[str, Decimal]]] = None) -> int:
    """Insert the default classification rows that are not present yet."""
    rules = DEFAULT_CLASSIFICATIONS if rules is None else rules
    existing = {row.item_label for row in db.query(ExpenseClassification).all()}
    added = 0
    for label, (category, factor) in rules.items():
        key = normalize_label(label)
        if key in existing:
            continue
        db.add(ExpenseClassification(item_label=key, stock_category=category, units_per_item=factor))
        added += 1
    db.commit()
    return added
