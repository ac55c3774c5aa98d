"""Receipt source consumed by the aggregator.

The POS ingestion client writes receipts into the raw receipt tables; the
pipeline reads them back through :class:`DatabaseReceiptSource`. Anything that
implements :class:`ReceiptSource` can stand in for it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shift_pipeline.errors import UpstreamUnavailableError
from shift_pipeline.models import Receipt as ReceiptRow
from shift_pipeline.models import ReceiptLineItem, ReceiptModifier

logger = logging.getLogger(__name__)


def line_key(receipt_id: str, line_index: int) -> str:
    return f"{receipt_id}#{line_index}"


@dataclass(frozen=True)
class LineItem:
    receipt_id: str
    line_index: int
    sku: Optional[str]
    raw_name: str
    quantity: Decimal
    unit_price: Decimal
    timestamp: datetime

    @property
    def key(self) -> str:
        return line_key(self.receipt_id, self.line_index)


@dataclass(frozen=True)
class Modifier:
    receipt_id: str
    line_index: int
    modifier_id: Optional[str]
    raw_name: str
    quantity: Decimal
    price_impact: Decimal

    @property
    def base_line_key(self) -> str:
        return line_key(self.receipt_id, self.line_index)


@dataclass(frozen=True)
class Receipt:
    id: str
    timestamp: datetime
    line_items: tuple[LineItem, ...] = field(default_factory=tuple)
    modifiers: tuple[Modifier, ...] = field(default_factory=tuple)
    refund_for: Optional[str] = None

    @property
    def is_refund(self) -> bool:
        return self.refund_for is not None


class ReceiptSource(Protocol):
    def fetch_receipts(self, window_start: datetime, window_end: datetime) -> list[Receipt]:
        ...


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DatabaseReceiptSource:
    """Reads receipts stored by the ingestion endpoint."""

    def __init__(self, db: Session):
        self.db = db

    def fetch_receipts(self, window_start: datetime, window_end: datetime) -> list[Receipt]:
        try:
            rows = (
                self.db.query(ReceiptRow)
                .filter(
                    ReceiptRow.occurred_at >= window_start,
                    ReceiptRow.occurred_at < window_end,
                )
                .order_by(ReceiptRow.occurred_at, ReceiptRow.id)
                .all()
            )
            receipt_ids = [row.id for row in rows]
            lines_by_receipt: dict[str, list[ReceiptLineItem]] = {}
            modifiers_by_receipt: dict[str, list[ReceiptModifier]] = {}
            if receipt_ids:
                for line in (
                    self.db.query(ReceiptLineItem)
                    .filter(ReceiptLineItem.receipt_id.in_(receipt_ids))
                    .order_by(ReceiptLineItem.receipt_id, ReceiptLineItem.line_index)
                    .all()
                ):
                    lines_by_receipt.setdefault(line.receipt_id, []).append(line)
                for modifier in (
                    self.db.query(ReceiptModifier)
                    .filter(ReceiptModifier.receipt_id.in_(receipt_ids))
                    .order_by(ReceiptModifier.receipt_id, ReceiptModifier.line_index, ReceiptModifier.id)
                    .all()
                ):
                    modifiers_by_receipt.setdefault(modifier.receipt_id, []).append(modifier)
        except SQLAlchemyError as exc:
            logger.error("receipt fetch failed for %s..%s: %s", window_start, window_end, exc)
            raise UpstreamUnavailableError(f"receipt source unavailable: {exc}") from exc

        receipts = []
        for row in rows:
            occurred_at = as_utc(row.occurred_at)
            receipts.append(
                Receipt(
                    id=row.id,
                    timestamp=occurred_at,
                    refund_for=row.refund_for,
                    line_items=tuple(
                        LineItem(
                            receipt_id=row.id,
                            line_index=line.line_index,
                            sku=line.sku,
                            raw_name=line.raw_name,
                            quantity=Decimal(line.quantity),
                            unit_price=Decimal(line.unit_price),
                            timestamp=occurred_at,
                        )
                        for line in lines_by_receipt.get(row.id, [])
                    ),
                    modifiers=tuple(
                        Modifier(
                            receipt_id=row.id,
                            line_index=modifier.line_index,
                            modifier_id=modifier.modifier_id,
                            raw_name=modifier.raw_name,
                            quantity=Decimal(modifier.quantity),
                            price_impact=Decimal(modifier.price_impact),
                        )
                        for modifier in modifiers_by_receipt.get(row.id, [])
                    ),
                )
            )
        return receipts
