"""Recipe cascade: sold items to leaf ingredient usage.

Only this module writes ``sold_item_recipe`` and
``sold_item_ingredient_usage``. It runs as a batch over a fully aggregated
shift and is never called per receipt.

A recipe line whose ingredient name matches another recipe with lines of its
own is a prep and is expanded recursively; everything else is a leaf. Usage
rows are written only for leaves.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from shift_pipeline.config import Settings, settings
from shift_pipeline.errors import CycleDepthExceededError
from shift_pipeline.models import (
    Recipe,
    RecipeIngredient,
    ShiftItemAggregate,
    SoldItemIngredientUsage,
    SoldItemRecipe,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SoldItem:
    id: str
    canonical_name: str
    shift_date: date
    quantity: Decimal


@dataclass(frozen=True)
class RecipeLine:
    ingredient_ref: str
    quantity: Decimal
    unit: str


@dataclass(frozen=True)
class RecipeNode:
    id: int
    name: str
    is_final: bool
    lines: tuple[RecipeLine, ...]


class RecipeGraph:
    """Recipes indexed by exact name."""

    def __init__(self, nodes: Sequence[RecipeNode]):
        self._by_name = {node.name: node for node in nodes}

    @classmethod
    def from_db(cls, db: Session) -> "RecipeGraph":
        lines: dict[int, list[RecipeLine]] = {}
        for row in db.query(RecipeIngredient).order_by(RecipeIngredient.recipe_id, RecipeIngredient.id).all():
            lines.setdefault(row.recipe_id, []).append(
                RecipeLine(ingredient_ref=row.ingredient_ref, quantity=Decimal(row.quantity), unit=row.unit)
            )
        nodes = [
            RecipeNode(id=recipe.id, name=recipe.name, is_final=recipe.is_final, lines=tuple(lines.get(recipe.id, [])))
            for recipe in db.query(Recipe).all()
        ]
        return cls(nodes)

    def get(self, name: str) -> Optional[RecipeNode]:
        return self._by_name.get(name)


@dataclass
class Explosion:
    sold_item: SoldItem
    recipe: RecipeNode
    usage: dict[tuple[str, str], Decimal] = field(default_factory=dict)


def _expand(
    graph: RecipeGraph,
    sold_item: SoldItem,
    node: RecipeNode,
    multiplier: Decimal,
    path: list[str],
    usage: dict[tuple[str, str], Decimal],
    max_depth: int,
) -> None:
    for line in node.lines:
        line_qty = line.quantity * multiplier
        prep = graph.get(line.ingredient_ref)
        if prep is not None and prep.lines:
            if prep.name in path or len(path) >= max_depth:
                raise CycleDepthExceededError(sold_item.canonical_name, path + [prep.name], max_depth)
            _expand(graph, sold_item, prep, line_qty, path + [prep.name], usage, max_depth)
            continue
        key = (line.ingredient_ref, line.unit)
        usage[key] = usage.get(key, Decimal("0")) + line_qty


def expand_sold_item(graph: RecipeGraph, sold_item: SoldItem, max_depth: int) -> Optional[Explosion]:
    """Resolve a sold item to leaf usage in memory; ``None`` when it has no recipe."""
    recipe = graph.get(sold_item.canonical_name)
    if recipe is None:
        return None
    explosion = Explosion(sold_item=sold_item, recipe=recipe)
    _expand(graph, sold_item, recipe, sold_item.quantity, [recipe.name], explosion.usage, max_depth)
    return explosion


def explode(
    db: Session,
    sold_item: SoldItem,
    graph: Optional[RecipeGraph] = None,
    config: Settings = settings,
) -> Optional[Explosion]:
    """Write the recipe link and leaf usage rows of one sold item.

    Returns ``None`` (and writes nothing) when the item has no recipe. A cycle
    raises ``CycleDepthExceededError`` before anything is written.
    """
    graph = graph or RecipeGraph.from_db(db)
    explosion = expand_sold_item(graph, sold_item, config.max_recipe_depth)
    if explosion is None:
        logger.warning("no recipe for sold item %r (%s)", sold_item.canonical_name, sold_item.id)
        return None

    db.add(
        SoldItemRecipe(
            shift_date=sold_item.shift_date,
            sold_item_id=sold_item.id,
            recipe_id=explosion.recipe.id,
            quantity=sold_item.quantity,
        )
    )
    db.add_all(
        SoldItemIngredientUsage(
            shift_date=sold_item.shift_date,
            sold_item_id=sold_item.id,
            ingredient=ingredient,
            unit=unit,
            quantity=quantity,
        )
        for (ingredient, unit), quantity in sorted(explosion.usage.items())
    )
    return explosion


def sold_items_for(db: Session, shift_date: date) -> list[SoldItem]:
    rows = (
        db.query(ShiftItemAggregate)
        .filter(ShiftItemAggregate.shift_date == shift_date)
        .order_by(ShiftItemAggregate.resolved_key)
        .all()
    )
    return [
        SoldItem(
            id=f"{shift_date.isoformat()}:{row.resolved_key}",
            canonical_name=row.name,
            shift_date=shift_date,
            quantity=Decimal(row.quantity),
        )
        for row in rows
        if Decimal(row.quantity) != 0
    ]


@dataclass
class DerivationResult:
    shift_date: date
    count: int = 0
    sold_items: int = 0
    mapped: int = 0
    errors: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)

    @property
    def coverage_percent(self) -> float:
        if self.sold_items == 0:
            return 100.0
        return round(self.mapped * 100.0 / self.sold_items, 2)


def derive_ingredient_usage(
    db: Session,
    shift_date: date,
    graph: Optional[RecipeGraph] = None,
    config: Settings = settings,
    commit: bool = True,
) -> DerivationResult:
    """Replace the ingredient usage of ``shift_date`` from its item aggregates.

    Missing recipes and cycles are reported per sold item; only database
    failures abort the batch.
    """
    graph = graph or RecipeGraph.from_db(db)
    result = DerivationResult(shift_date=shift_date)
    try:
        db.query(SoldItemIngredientUsage).filter(SoldItemIngredientUsage.shift_date == shift_date).delete(
            synchronize_session=False
        )
        db.query(SoldItemRecipe).filter(SoldItemRecipe.shift_date == shift_date).delete(
            synchronize_session=False
        )
        for sold_item in sold_items_for(db, shift_date):
            result.sold_items += 1
            try:
                explosion = explode(db, sold_item, graph, config)
            except CycleDepthExceededError as exc:
                logger.error("%s", exc)
                result.errors.append(str(exc))
                continue
            if explosion is None:
                result.unresolved.append(sold_item.canonical_name)
                continue
            result.mapped += 1
            result.count += len(explosion.usage)
        db.flush()
        if commit:
            db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "derived ingredient usage %s: %d rows, %d/%d sold items mapped, %d errors",
        shift_date.isoformat(),
        result.count,
        result.mapped,
        result.sold_items,
        len(result.errors),
    )
    return result
