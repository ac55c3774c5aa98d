from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from shift_pipeline.aggregator import COMPOSED_CATEGORIES
from shift_pipeline.cascade import derive_ingredient_usage
from shift_pipeline.catalog import CATEGORIES, COMPOSITION_KINDS
from shift_pipeline.classification import STOCK_CATEGORIES, normalize_label
from shift_pipeline.db import SessionLocal
from shift_pipeline.errors import (
    InvalidDateError,
    RebuildInProgressError,
    UpstreamUnavailableError,
)
from shift_pipeline.log import setup_logging
from shift_pipeline.models import (
    CatalogAlias,
    CatalogEntry,
    ExpenseClassification,
    PosShiftReport,
    Receipt,
    ReceiptLineItem,
    ReceiptModifier,
    Recipe,
    RecipeIngredient,
    ShiftCategorySummary,
    ShiftItemAggregate,
    ShiftModifierAggregate,
    SoldItemIngredientUsage,
    StaffShiftForm,
    StockPurchase,
)
from shift_pipeline.orchestrator import rebuild, rebuild_guard, rebuild_range
from shift_pipeline.reconciliation import reconcile
from shift_pipeline.receipts import as_utc
from shift_pipeline.windows import business_date_for, parse_business_date, window_for


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    yield


app = FastAPI(title="Shift Pipeline", lifespan=lifespan)


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _shift_date(value: Optional[str]) -> date:
    try:
        return parse_business_date(value)
    except InvalidDateError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _paginate_by_offset(query, limit: int, cursor: Optional[int]) -> tuple[list[Any], Optional[int]]:
    offset = cursor or 0
    rows = query.offset(offset).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        next_cursor = offset + limit
        rows = rows[:limit]
    return rows, next_cursor


def _list_meta(limit: int, cursor: Optional[int], next_cursor: Optional[int]) -> dict:
    meta = _meta()
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


# Pipeline


@app.post("/rebuild", tags=["Pipeline"])
def rebuild_shift(date: Optional[str] = Query(default=None), db: Session = Depends(get_db)) -> dict:
    shift_date = _shift_date(date)
    try:
        result = rebuild(db, shift_date)
    except RebuildInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except UpstreamUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    data = result.as_dict()
    warnings = list(data["unmappedCategories"])
    if result.derivation is not None:
        warnings.extend(f"no recipe: {name}" for name in result.derivation.unresolved)
        warnings.extend(result.derivation.errors)
    data["meta"] = _meta(warnings=warnings)
    return data


@app.post("/rebuild-range", tags=["Pipeline"])
def rebuild_shift_range(
    start: Optional[str] = Query(default=None),
    end: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    start_date = _shift_date(start)
    end_date = _shift_date(end)
    if end_date < start_date:
        raise HTTPException(status_code=400, detail="end must not be before start")
    results = rebuild_range(db, start_date, end_date)
    return {
        "ok": all(r["ok"] for r in results),
        "start": start_date.isoformat(),
        "end": end_date.isoformat(),
        "results": results,
        "meta": _meta(),
    }


@app.get("/rebuild/status", tags=["Pipeline"])
def rebuild_status(date: Optional[str] = Query(default=None)) -> dict:
    shift_date = _shift_date(date)
    return {"date": shift_date.isoformat(), "inProgress": rebuild_guard.is_active(shift_date)}


@app.get("/items", tags=["Pipeline"])
def get_shift_items(
    date: Optional[str] = Query(default=None),
    category: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    shift_date = _shift_date(date)
    query = db.query(ShiftItemAggregate).filter(ShiftItemAggregate.shift_date == shift_date)
    if category is not None:
        query = query.filter(ShiftItemAggregate.category == category)
    rows = query.order_by(ShiftItemAggregate.category, ShiftItemAggregate.name).all()
    items = [
        {
            "resolved_key": row.resolved_key,
            "sku": row.sku,
            "name": row.name,
            "category": row.category,
            "quantity": float(row.quantity),
            "patties": float(row.patties),
            "red_meat_grams": float(row.red_meat_grams),
            "chicken_grams": float(row.chicken_grams),
            "rolls_consumed": float(row.rolls_consumed),
            "raw_hits": row.raw_hits,
        }
        for row in rows
    ]
    modifiers = [
        {
            "name": row.modifier_name,
            "quantity": float(row.quantity),
            "occurrences": row.occurrences,
            "revenue": float(row.revenue),
        }
        for row in db.query(ShiftModifierAggregate)
        .filter(ShiftModifierAggregate.shift_date == shift_date)
        .order_by(ShiftModifierAggregate.modifier_name)
        .all()
    ]
    categories = {
        row.category: float(row.items_total)
        for row in db.query(ShiftCategorySummary)
        .filter(ShiftCategorySummary.shift_date == shift_date)
        .order_by(ShiftCategorySummary.category)
        .all()
    }
    totals = {
        key: sum(item[key] for item in items)
        for key in ("quantity", "patties", "red_meat_grams", "chicken_grams", "rolls_consumed")
    }
    window_start, window_end = window_for(shift_date)
    return {
        "ok": True,
        "date": shift_date.isoformat(),
        "window": {"start": window_start.isoformat(), "end": window_end.isoformat()},
        "items": items,
        "modifiers": modifiers,
        "categories": categories,
        "totals": totals,
        "meta": _meta(),
    }


@app.get("/reconcile", tags=["Pipeline"])
def get_reconciliation(date: Optional[str] = Query(default=None), db: Session = Depends(get_db)) -> dict:
    shift_date = _shift_date(date)
    record = reconcile(db, shift_date, cache=True)
    return record.as_dict()


@app.post("/derive-ingredient-usage", tags=["Pipeline"])
def derive_usage(date: Optional[str] = Query(default=None), db: Session = Depends(get_db)) -> dict:
    shift_date = _shift_date(date)
    result = derive_ingredient_usage(db, shift_date)
    return {
        "success": True,
        "count": result.count,
        "errors": result.errors,
        "unresolved": result.unresolved,
        "coveragePercent": result.coverage_percent,
        "meta": _meta(warnings=[f"no recipe: {name}" for name in result.unresolved]),
    }


@app.get("/ingredient-usage", tags=["Pipeline"])
def get_ingredient_usage(date: Optional[str] = Query(default=None), db: Session = Depends(get_db)) -> dict:
    shift_date = _shift_date(date)
    rows = (
        db.query(SoldItemIngredientUsage)
        .filter(SoldItemIngredientUsage.shift_date == shift_date)
        .order_by(SoldItemIngredientUsage.sold_item_id, SoldItemIngredientUsage.ingredient)
        .all()
    )
    totals: dict[tuple[str, str], float] = {}
    for row in rows:
        key = (row.ingredient, row.unit)
        totals[key] = totals.get(key, 0.0) + float(row.quantity)
    return {
        "ok": True,
        "date": shift_date.isoformat(),
        "usage": [
            {
                "sold_item_id": row.sold_item_id,
                "ingredient": row.ingredient,
                "unit": row.unit,
                "quantity": float(row.quantity),
            }
            for row in rows
        ],
        "totals": [
            {"ingredient": ingredient, "unit": unit, "quantity": quantity}
            for (ingredient, unit), quantity in sorted(totals.items())
        ],
        "meta": _meta(),
    }


# Receipt ingestion


class ReceiptLineInput(BaseModel):
    line_index: Optional[int] = None
    sku: Optional[str] = None
    name: str
    quantity: Decimal = Decimal("1")
    unit_price: Decimal


class ReceiptModifierInput(BaseModel):
    line_index: int
    modifier_id: Optional[str] = None
    name: str
    quantity: Decimal = Decimal("1")
    price_impact: Decimal = Decimal("0")


class ReceiptInput(BaseModel):
    id: str
    timestamp: datetime
    refund_for: Optional[str] = None
    line_items: list[ReceiptLineInput] = Field(default_factory=list)
    modifiers: list[ReceiptModifierInput] = Field(default_factory=list)


class ReceiptBulkUpsert(BaseModel):
    model_config = {"json_schema_extra": {"example": {'receipts': [{'id': '2-1044', 'timestamp': '2024-03-01T19:12:00+07:00', 'refund_for': None, 'line_items': [{'line_index': 0, 'sku': 'MD1', 'name': 'Single Meal Set (Meal Deal)', 'quantity': 1, 'unit_price': 249}, {'line_index': 1, 'sku': 'B1', 'name': 'Single Smash Burger', 'quantity': 1, 'unit_price': 0}], 'modifiers': [{'line_index': 1, 'modifier_id': 'MOD-CHEESE', 'name': 'Extra Cheese', 'quantity': 1, 'price_impact': 20}]}]}}}
    receipts: list[ReceiptInput]


@app.post("/api/v1/ingest/pos/receipts:bulkUpsert", tags=["Ingestion - POS Receipts"])
def bulk_upsert_receipts(payload: ReceiptBulkUpsert, db: Session = Depends(get_db)) -> dict:
    accepted = 0
    updated = 0
    rejected = 0
    results = []
    warnings = []
    for receipt_payload in payload.receipts:
        if db.get(Receipt, receipt_payload.id) is not None:
            updated += 1
            results.append({"receipt_id": receipt_payload.id, "upsert_status": "UPDATED"})
            continue
        line_indexes = [
            line.line_index if line.line_index is not None else position
            for position, line in enumerate(receipt_payload.line_items)
        ]
        if len(set(line_indexes)) != len(line_indexes):
            rejected += 1
            warnings.append(f"duplicate_line_index:{receipt_payload.id}")
            results.append({"receipt_id": receipt_payload.id, "upsert_status": "REJECTED"})
            continue
        business_date = business_date_for(receipt_payload.timestamp)
        if business_date is None:
            warnings.append(f"outside_shift_window:{receipt_payload.id}")
        db.add(
            Receipt(
                id=receipt_payload.id,
                occurred_at=as_utc(receipt_payload.timestamp),
                refund_for=receipt_payload.refund_for,
                ingested_at=_now(),
            )
        )
        for line_index, line in zip(line_indexes, receipt_payload.line_items):
            db.add(
                ReceiptLineItem(
                    receipt_id=receipt_payload.id,
                    line_index=line_index,
                    sku=line.sku,
                    raw_name=line.name,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                )
            )
        for modifier in receipt_payload.modifiers:
            db.add(
                ReceiptModifier(
                    receipt_id=receipt_payload.id,
                    line_index=modifier.line_index,
                    modifier_id=modifier.modifier_id,
                    raw_name=modifier.name,
                    quantity=modifier.quantity,
                    price_impact=modifier.price_impact,
                )
            )
        db.flush()
        accepted += 1
        results.append(
            {
                "receipt_id": receipt_payload.id,
                "upsert_status": "UPSERTED",
                "business_date": business_date.isoformat() if business_date else None,
            }
        )
    db.commit()
    return {
        "data": {"accepted": accepted, "updated": updated, "rejected": rejected, "results": results},
        "meta": _meta(warnings=warnings),
    }


# Reference data


class CatalogEntryUpsert(BaseModel):
    model_config = {"json_schema_extra": {"example": {'sku': 'B2', 'canonical_name': 'Ultimate Double', 'category': 'burger', 'composition_kind': 'beef', 'patties_per_unit': 2, 'grams_per_unit': None, 'rolls_per_unit': 1, 'is_meal_set': False, 'base_sku': None, 'aliases': ['Ultimate Double (คู่)']}}}
    sku: str
    canonical_name: str
    category: str = "other"
    composition_kind: str = "none"
    patties_per_unit: int = 0
    grams_per_unit: Optional[Decimal] = None
    rolls_per_unit: int = 0
    is_meal_set: bool = False
    base_sku: Optional[str] = None
    is_active: bool = True
    aliases: list[str] = Field(default_factory=list)


def _catalog_entry_data(entry: CatalogEntry, aliases: list[str]) -> dict:
    return {
        "sku": entry.sku,
        "canonical_name": entry.canonical_name,
        "category": entry.category,
        "composition_kind": entry.composition_kind,
        "patties_per_unit": entry.patties_per_unit,
        "grams_per_unit": float(entry.grams_per_unit) if entry.grams_per_unit is not None else None,
        "rolls_per_unit": entry.rolls_per_unit,
        "is_meal_set": entry.is_meal_set,
        "base_sku": entry.base_sku,
        "is_active": entry.is_active,
        "aliases": aliases,
    }


@app.put("/api/v1/catalog-entries", tags=["Catalog"])
def upsert_catalog_entry(payload: CatalogEntryUpsert, db: Session = Depends(get_db)) -> dict:
    if payload.category not in CATEGORIES:
        raise HTTPException(status_code=400, detail=f"category must be one of {', '.join(CATEGORIES)}")
    if payload.composition_kind not in COMPOSITION_KINDS:
        raise HTTPException(status_code=400, detail=f"composition_kind must be one of {', '.join(COMPOSITION_KINDS)}")
    if payload.is_meal_set and not payload.base_sku:
        raise HTTPException(status_code=400, detail="meal sets need a base_sku")
    warnings = []
    if payload.composition_kind != "none" and payload.category not in COMPOSED_CATEGORIES:
        warnings.append("composition_ignored_for_category")
    entry = db.get(CatalogEntry, payload.sku)
    if entry is None:
        entry = CatalogEntry(sku=payload.sku)
        db.add(entry)
    entry.canonical_name = payload.canonical_name
    entry.category = payload.category
    entry.composition_kind = payload.composition_kind
    entry.patties_per_unit = payload.patties_per_unit
    entry.grams_per_unit = payload.grams_per_unit
    entry.rolls_per_unit = payload.rolls_per_unit
    entry.is_meal_set = payload.is_meal_set
    entry.base_sku = payload.base_sku
    entry.is_active = payload.is_active
    db.flush()
    for raw_name in payload.aliases:
        alias = db.get(CatalogAlias, raw_name)
        if alias is None:
            db.add(CatalogAlias(raw_name=raw_name, sku=payload.sku))
        elif alias.sku != payload.sku:
            warnings.append(f"alias_moved:{raw_name}")
            alias.sku = payload.sku
    db.commit()
    db.refresh(entry)
    aliases = [row.raw_name for row in db.query(CatalogAlias).filter(CatalogAlias.sku == entry.sku).order_by(CatalogAlias.raw_name)]
    return {"data": _catalog_entry_data(entry, aliases), "meta": _meta(warnings=warnings)}


@app.get("/api/v1/catalog-entries", tags=["Catalog"])
def list_catalog_entries(
    category: Optional[str] = Query(default=None),
    is_active: Optional[bool] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(CatalogEntry)
    if category is not None:
        query = query.filter(CatalogEntry.category == category)
    if is_active is not None:
        query = query.filter(CatalogEntry.is_active == is_active)
    entries, next_cursor = _paginate_by_offset(query.order_by(CatalogEntry.sku), limit, cursor)
    aliases: dict[str, list[str]] = {}
    for alias in db.query(CatalogAlias).order_by(CatalogAlias.raw_name).all():
        aliases.setdefault(alias.sku, []).append(alias.raw_name)
    data = [_catalog_entry_data(entry, aliases.get(entry.sku, [])) for entry in entries]
    return {"data": data, "meta": _list_meta(limit, cursor, next_cursor)}


class CatalogAliasUpsert(BaseModel):
    raw_name: str
    sku: str


@app.put("/api/v1/catalog-aliases", tags=["Catalog"])
def upsert_catalog_alias(payload: CatalogAliasUpsert, db: Session = Depends(get_db)) -> dict:
    if db.get(CatalogEntry, payload.sku) is None:
        raise HTTPException(status_code=404, detail="catalog entry not found")
    alias = db.get(CatalogAlias, payload.raw_name)
    if alias is None:
        alias = CatalogAlias(raw_name=payload.raw_name, sku=payload.sku)
        db.add(alias)
    else:
        alias.sku = payload.sku
    db.commit()
    return {"data": {"raw_name": alias.raw_name, "sku": alias.sku}, "meta": _meta()}


class RecipeIngredientInput(BaseModel):
    ingredient: str
    quantity: Decimal
    unit: str


class RecipeUpsert(BaseModel):
    model_config = {"json_schema_extra": {"example": {'name': 'Single Smash Burger', 'is_final': True, 'ingredients': [{'ingredient': 'Patty Prep', 'quantity': 1, 'unit': 'portion'}, {'ingredient': 'Burger Bun', 'quantity': 1, 'unit': 'pcs'}]}}}
    name: str
    is_final: bool = False
    ingredients: list[RecipeIngredientInput] = Field(default_factory=list)


def _recipe_data(recipe: Recipe, lines: list[RecipeIngredient]) -> dict:
    return {
        "recipe_id": recipe.id,
        "name": recipe.name,
        "is_final": recipe.is_final,
        "ingredients": [
            {"ingredient": line.ingredient_ref, "quantity": float(line.quantity), "unit": line.unit}
            for line in lines
        ],
    }


@app.put("/api/v1/recipes", tags=["Recipes"])
def upsert_recipe(payload: RecipeUpsert, db: Session = Depends(get_db)) -> dict:
    recipe = db.query(Recipe).filter(Recipe.name == payload.name).first()
    if recipe is None:
        recipe = Recipe(name=payload.name, is_final=payload.is_final)
        db.add(recipe)
        db.flush()
    else:
        recipe.is_final = payload.is_final
        db.query(RecipeIngredient).filter(RecipeIngredient.recipe_id == recipe.id).delete(
            synchronize_session=False
        )
    lines = [
        RecipeIngredient(
            recipe_id=recipe.id,
            ingredient_ref=line.ingredient,
            quantity=line.quantity,
            unit=line.unit,
        )
        for line in payload.ingredients
    ]
    db.add_all(lines)
    db.commit()
    db.refresh(recipe)
    warnings = ["self_reference"] if any(line.ingredient == payload.name for line in payload.ingredients) else []
    return {"data": _recipe_data(recipe, lines), "meta": _meta(warnings=warnings)}


@app.get("/api/v1/recipes/{recipe_id}", tags=["Recipes"])
def get_recipe(recipe_id: int, db: Session = Depends(get_db)) -> dict:
    recipe = db.get(Recipe, recipe_id)
    if not recipe:
        raise HTTPException(status_code=404, detail="recipe not found")
    lines = (
        db.query(RecipeIngredient)
        .filter(RecipeIngredient.recipe_id == recipe.id)
        .order_by(RecipeIngredient.id)
        .all()
    )
    return {"data": _recipe_data(recipe, lines), "meta": _meta()}


class ExpenseClassificationUpsert(BaseModel):
    model_config = {"json_schema_extra": {"example": {'item_label': 'Burger Buns (pack of 6)', 'stock_category': 'rolls', 'units_per_item': 6}}}
    item_label: str
    stock_category: str
    units_per_item: Decimal = Decimal("1")


@app.put("/api/v1/expense-classifications", tags=["Stock Ledger"])
def upsert_expense_classification(payload: ExpenseClassificationUpsert, db: Session = Depends(get_db)) -> dict:
    if payload.stock_category not in STOCK_CATEGORIES:
        raise HTTPException(status_code=400, detail=f"stock_category must be one of {', '.join(STOCK_CATEGORIES)}")
    label = normalize_label(payload.item_label)
    row = db.get(ExpenseClassification, label)
    if row is None:
        row = ExpenseClassification(item_label=label)
        db.add(row)
    row.stock_category = payload.stock_category
    row.units_per_item = payload.units_per_item
    db.commit()
    return {
        "data": {
            "item_label": row.item_label,
            "stock_category": row.stock_category,
            "units_per_item": float(row.units_per_item),
        },
        "meta": _meta(),
    }


# Shift observations


class StaffShiftFormSubmit(BaseModel):
    model_config = {"json_schema_extra": {"example": {'shift_date': '2024-03-01', 'total_sales': 15400, 'cash_sales': 6200, 'qr_sales': 5100, 'grab_sales': 4100, 'other_sales': 0, 'expenses_total': 1850, 'starting_cash': 2500, 'closing_cash': 6850, 'cash_banked': 4350, 'qr_banked': 5100, 'rolls_end': 42, 'meat_end_grams': 3800, 'drinks_end': 61}}}
    shift_date: date
    total_sales: Decimal = Decimal("0")
    cash_sales: Decimal = Decimal("0")
    qr_sales: Decimal = Decimal("0")
    grab_sales: Decimal = Decimal("0")
    other_sales: Decimal = Decimal("0")
    expenses_total: Decimal = Decimal("0")
    starting_cash: Decimal = Decimal("0")
    closing_cash: Decimal = Decimal("0")
    cash_banked: Decimal = Decimal("0")
    qr_banked: Decimal = Decimal("0")
    rolls_end: Optional[int] = None
    meat_end_grams: Optional[Decimal] = None
    drinks_end: Optional[int] = None


@app.put("/api/v1/staff-shift-forms", tags=["Shift Observations"])
def submit_staff_shift_form(payload: StaffShiftFormSubmit, db: Session = Depends(get_db)) -> dict:
    form = db.query(StaffShiftForm).filter(StaffShiftForm.shift_date == payload.shift_date).first()
    if form is None:
        form = StaffShiftForm(shift_date=payload.shift_date)
        db.add(form)
    for name, value in payload.model_dump(exclude={"shift_date"}).items():
        setattr(form, name, value)
    form.submitted_at = _now()
    db.commit()
    db.refresh(form)
    return {
        "data": {
            "staff_shift_form_id": form.id,
            "shift_date": payload.shift_date.isoformat(),
            "submitted_at": form.submitted_at.isoformat(),
        },
        "meta": _meta(),
    }


class PosShiftReportSubmit(BaseModel):
    model_config = {"json_schema_extra": {"example": {'shift_date': '2024-03-01', 'total_sales': 15400, 'cash_sales': 6200, 'qr_sales': 5100, 'grab_sales': 4100, 'other_sales': 0, 'expenses_total': 1850, 'starting_cash': 2500, 'expected_cash': 6850, 'actual_cash': 6850, 'cash_banked': 4350, 'qr_banked': 5100}}}
    shift_date: date
    total_sales: Decimal = Decimal("0")
    cash_sales: Decimal = Decimal("0")
    qr_sales: Decimal = Decimal("0")
    grab_sales: Decimal = Decimal("0")
    other_sales: Decimal = Decimal("0")
    expenses_total: Decimal = Decimal("0")
    starting_cash: Decimal = Decimal("0")
    expected_cash: Optional[Decimal] = None
    actual_cash: Optional[Decimal] = None
    cash_banked: Optional[Decimal] = None
    qr_banked: Optional[Decimal] = None


@app.put("/api/v1/pos-shift-reports", tags=["Shift Observations"])
def submit_pos_shift_report(payload: PosShiftReportSubmit, db: Session = Depends(get_db)) -> dict:
    report = db.query(PosShiftReport).filter(PosShiftReport.shift_date == payload.shift_date).first()
    if report is None:
        report = PosShiftReport(shift_date=payload.shift_date)
        db.add(report)
    for name, value in payload.model_dump(exclude={"shift_date"}).items():
        setattr(report, name, value)
    report.received_at = _now()
    db.commit()
    db.refresh(report)
    return {
        "data": {
            "pos_shift_report_id": report.id,
            "shift_date": payload.shift_date.isoformat(),
            "received_at": report.received_at.isoformat(),
        },
        "meta": _meta(),
    }


class StockPurchaseCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'shift_date': '2024-03-01', 'item_label': 'Burger Buns', 'quantity': 20, 'amount': 400, 'supplier': 'Bakery'}}}
    shift_date: date
    item_label: str
    quantity: Decimal
    amount: Optional[Decimal] = None
    supplier: Optional[str] = None


@app.post("/api/v1/stock-purchases", tags=["Stock Ledger"])
def create_stock_purchase(payload: StockPurchaseCreate, db: Session = Depends(get_db)) -> dict:
    purchase = StockPurchase(
        shift_date=payload.shift_date,
        item_label=payload.item_label,
        quantity=payload.quantity,
        amount=payload.amount,
        supplier=payload.supplier,
    )
    db.add(purchase)
    db.commit()
    db.refresh(purchase)
    warnings = []
    if db.get(ExpenseClassification, normalize_label(payload.item_label)) is None:
        warnings.append("uncategorized_item_label")
    return {
        "data": {
            "stock_purchase_id": purchase.id,
            "shift_date": payload.shift_date.isoformat(),
            "item_label": purchase.item_label,
            "quantity": float(purchase.quantity),
            "amount": float(purchase.amount) if purchase.amount is not None else None,
            "supplier": purchase.supplier,
        },
        "meta": _meta(warnings=warnings),
    }
