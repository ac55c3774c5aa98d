"""Idempotent rebuild of a shift's derived tables.

A rebuild fetches the shift's receipts, replaces its item/modifier aggregates
and re-derives its ingredient usage, all in one transaction. At most one
rebuild per shift date runs at a time; different dates run independently.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from typing import Iterator, Optional

from sqlalchemy.orm import Session

from shift_pipeline.aggregator import AggregationResult, aggregate
from shift_pipeline.cascade import DerivationResult, derive_ingredient_usage
from shift_pipeline.config import Settings, settings
from shift_pipeline.errors import RebuildInProgressError, UpstreamUnavailableError
from shift_pipeline.receipts import ReceiptSource
from shift_pipeline.windows import iter_business_dates

logger = logging.getLogger(__name__)


class RebuildGuard:
    """Single-flight guard keyed by shift date."""

    def __init__(self):
        self._lock = threading.Lock()
        self._active: set[date] = set()

    @contextmanager
    def hold(self, shift_date: date) -> Iterator[None]:
        with self._lock:
            if shift_date in self._active:
                raise RebuildInProgressError(shift_date)
            self._active.add(shift_date)
        try:
            yield
        finally:
            with self._lock:
                self._active.discard(shift_date)

    def is_active(self, shift_date: date) -> bool:
        with self._lock:
            return shift_date in self._active


rebuild_guard = RebuildGuard()


@dataclass
class RebuildResult:
    shift_date: date
    aggregation: AggregationResult
    derivation: Optional[DerivationResult] = None

    def as_dict(self) -> dict:
        data = {
            "ok": True,
            "date": self.shift_date.isoformat(),
            "itemsAggregated": len(self.aggregation.items),
            "modifiersAggregated": len(self.aggregation.modifiers),
            "unmappedCategories": self.aggregation.unmapped_labels,
            "receiptsProcessed": self.aggregation.receipts_processed,
            "refundsSkipped": self.aggregation.refunds_skipped,
            "mealSetLinesExcluded": len(self.aggregation.excluded_lines),
        }
        if self.derivation is not None:
            data["ingredientUsage"] = {
                "count": self.derivation.count,
                "errors": self.derivation.errors,
                "unresolved": self.derivation.unresolved,
            }
        return data


def rebuild(
    db: Session,
    shift_date: date,
    source: Optional[ReceiptSource] = None,
    config: Settings = settings,
    guard: RebuildGuard = rebuild_guard,
    derive_usage: bool = True,
) -> RebuildResult:
    """Regenerate every derived row of ``shift_date`` in a single transaction."""
    with guard.hold(shift_date):
        logger.info("rebuild %s started", shift_date.isoformat())
        try:
            aggregation = aggregate(db, shift_date, source=source, config=config, commit=False)
            derivation = None
            if derive_usage:
                derivation = derive_ingredient_usage(db, shift_date, config=config, commit=False)
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("rebuild %s committed", shift_date.isoformat())
        return RebuildResult(shift_date=shift_date, aggregation=aggregation, derivation=derivation)


def rebuild_range(
    db: Session,
    start: date,
    end: date,
    source: Optional[ReceiptSource] = None,
    config: Settings = settings,
    guard: RebuildGuard = rebuild_guard,
) -> list[dict]:
    """Rebuild each date in ``[start, end]`` in turn, one transaction per date."""
    results = []
    for shift_date in iter_business_dates(start, end):
        try:
            results.append(rebuild(db, shift_date, source=source, config=config, guard=guard).as_dict())
        except (UpstreamUnavailableError, RebuildInProgressError) as exc:
            logger.error("rebuild %s failed: %s", shift_date.isoformat(), exc)
            results.append({"ok": False, "date": shift_date.isoformat(), "error": str(exc)})
    return results
