from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from shift_pipeline.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")


# Reference data, maintained by the admin surface.


class CatalogEntry(Base):
    __tablename__ = "catalog_entry"

    sku: Mapped[str] = mapped_column(Text, primary_key=True)
    canonical_name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False, default="other")
    composition_kind: Mapped[str] = mapped_column(Text, nullable=False, default="none")
    patties_per_unit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    grams_per_unit: Mapped[Numeric | None] = mapped_column(Numeric)
    rolls_per_unit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_meal_set: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    base_sku: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class CatalogAlias(Base):
    __tablename__ = "catalog_alias"

    raw_name: Mapped[str] = mapped_column(Text, primary_key=True)
    sku: Mapped[str] = mapped_column(Text, ForeignKey("catalog_entry.sku"), nullable=False)


class Recipe(Base):
    __tablename__ = "recipe"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    is_final: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class RecipeIngredient(Base):
    __tablename__ = "recipe_ingredient"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    recipe_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("recipe.id"), nullable=False)
    ingredient_ref: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[Numeric] = mapped_column(Numeric, nullable=False)
    unit: Mapped[str] = mapped_column(Text, nullable=False)


class ExpenseClassification(Base):
    __tablename__ = "expense_classification"

    item_label: Mapped[str] = mapped_column(Text, primary_key=True)
    stock_category: Mapped[str] = mapped_column(Text, nullable=False)
    units_per_item: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=1)


# Raw receipts as handed over by the POS ingestion client.


class Receipt(Base):
    __tablename__ = "receipt"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    occurred_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    refund_for: Mapped[str | None] = mapped_column(Text)
    ingested_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_receipt_occurred_at", "occurred_at"),)


class ReceiptLineItem(Base):
    __tablename__ = "receipt_line_item"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    receipt_id: Mapped[str] = mapped_column(Text, ForeignKey("receipt.id"), nullable=False)
    line_index: Mapped[int] = mapped_column(Integer, nullable=False)
    sku: Mapped[str | None] = mapped_column(Text)
    raw_name: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[Numeric] = mapped_column(Numeric, nullable=False)
    unit_price: Mapped[Numeric] = mapped_column(Numeric, nullable=False)

    __table_args__ = (UniqueConstraint("receipt_id", "line_index"),)


class ReceiptModifier(Base):
    __tablename__ = "receipt_modifier"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    receipt_id: Mapped[str] = mapped_column(Text, ForeignKey("receipt.id"), nullable=False)
    line_index: Mapped[int] = mapped_column(Integer, nullable=False)
    modifier_id: Mapped[str | None] = mapped_column(Text)
    raw_name: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=1)
    price_impact: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)


# Independent shift observations.


class StaffShiftForm(Base):
    __tablename__ = "staff_shift_form"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    shift_date: Mapped[Date] = mapped_column(Date, nullable=False, unique=True)
    total_sales: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)
    cash_sales: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)
    qr_sales: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)
    grab_sales: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)
    other_sales: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)
    expenses_total: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)
    starting_cash: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)
    closing_cash: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)
    cash_banked: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)
    qr_banked: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)
    rolls_end: Mapped[int | None] = mapped_column(Integer)
    meat_end_grams: Mapped[Numeric | None] = mapped_column(Numeric)
    drinks_end: Mapped[int | None] = mapped_column(Integer)
    submitted_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class PosShiftReport(Base):
    __tablename__ = "pos_shift_report"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    shift_date: Mapped[Date] = mapped_column(Date, nullable=False, unique=True)
    total_sales: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)
    cash_sales: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)
    qr_sales: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)
    grab_sales: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)
    other_sales: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)
    expenses_total: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)
    starting_cash: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)
    expected_cash: Mapped[Numeric | None] = mapped_column(Numeric)
    actual_cash: Mapped[Numeric | None] = mapped_column(Numeric)
    cash_banked: Mapped[Numeric | None] = mapped_column(Numeric)
    qr_banked: Mapped[Numeric | None] = mapped_column(Numeric)
    received_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class StockPurchase(Base):
    __tablename__ = "stock_purchase"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    shift_date: Mapped[Date] = mapped_column(Date, nullable=False, index=True)
    item_label: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[Numeric] = mapped_column(Numeric, nullable=False)
    amount: Mapped[Numeric | None] = mapped_column(Numeric)
    supplier: Mapped[str | None] = mapped_column(Text)


# Derived tables. Each one has a single writer module.


class ShiftItemAggregate(Base):
    __tablename__ = "shift_item_aggregate"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    shift_date: Mapped[Date] = mapped_column(Date, nullable=False)
    resolved_key: Mapped[str] = mapped_column(Text, nullable=False)
    sku: Mapped[str | None] = mapped_column(Text)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[Numeric] = mapped_column(Numeric, nullable=False)
    patties: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)
    red_meat_grams: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)
    chicken_grams: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)
    rolls_consumed: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)
    raw_hits: Mapped[list] = mapped_column(JSON_TYPE, nullable=False)
    window_start: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    window_end: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (UniqueConstraint("shift_date", "resolved_key"),)


class ShiftModifierAggregate(Base):
    __tablename__ = "shift_modifier_aggregate"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    shift_date: Mapped[Date] = mapped_column(Date, nullable=False)
    modifier_name: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[Numeric] = mapped_column(Numeric, nullable=False)
    occurrences: Mapped[int] = mapped_column(Integer, nullable=False)
    revenue: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=0)

    __table_args__ = (UniqueConstraint("shift_date", "modifier_name"),)


class ShiftCategorySummary(Base):
    __tablename__ = "shift_category_summary"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    shift_date: Mapped[Date] = mapped_column(Date, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    items_total: Mapped[Numeric] = mapped_column(Numeric, nullable=False)

    __table_args__ = (UniqueConstraint("shift_date", "category"),)


class SoldItemRecipe(Base):
    __tablename__ = "sold_item_recipe"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    shift_date: Mapped[Date] = mapped_column(Date, nullable=False)
    sold_item_id: Mapped[str] = mapped_column(Text, nullable=False)
    recipe_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("recipe.id"), nullable=False)
    quantity: Mapped[Numeric] = mapped_column(Numeric, nullable=False)


class SoldItemIngredientUsage(Base):
    __tablename__ = "sold_item_ingredient_usage"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    shift_date: Mapped[Date] = mapped_column(Date, nullable=False)
    sold_item_id: Mapped[str] = mapped_column(Text, nullable=False)
    ingredient: Mapped[str] = mapped_column(Text, nullable=False)
    unit: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[Numeric] = mapped_column(Numeric, nullable=False)

    __table_args__ = (UniqueConstraint("shift_date", "sold_item_id", "ingredient", "unit"),)


class ShiftReconciliation(Base):
    __tablename__ = "shift_reconciliation"

    shift_date: Mapped[Date] = mapped_column(Date, primary_key=True)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    record: Mapped[dict] = mapped_column(JSON_TYPE, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
