from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shift_pipeline.catalog import CatalogResolver, CatalogRule
from shift_pipeline.db import Base
from shift_pipeline.models import CatalogAlias, CatalogEntry


def _rule(sku: str, name: str, **overrides) -> CatalogRule:
    values = {
        "sku": sku,
        "canonical_name": name,
        "category": "burger",
        "composition_kind": "beef",
        "patties_per_unit": 1,
        "grams_per_unit": None,
        "rolls_per_unit": 1,
        "is_meal_set": False,
        "base_sku": None,
    }
    values.update(overrides)
    return CatalogRule(**values)


def _make_session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    return TestingSessionLocal()


def test_resolves_by_sku_before_alias() -> None:
    resolver = CatalogResolver(
        [_rule("B1", "Single Smash Burger"), _rule("B2", "Ultimate Double", patties_per_unit=2)],
        {"Ultimate Double (คู่)": "B2"},
    )
    assert resolver.resolve("B1", "Ultimate Double (คู่)").sku == "B1"
    assert resolver.resolve(None, "Ultimate Double (คู่)").sku == "B2"
    assert resolver.unmapped == []


def test_name_match_is_exact() -> None:
    resolver = CatalogResolver([_rule("B1", "Single Smash Burger")], {"Single Smash": "B1"})
    assert resolver.resolve(None, "single smash") is None
    assert resolver.resolve(None, "Single Smash ") is None
    assert resolver.resolve(None, "Single Smash Burger") is None
    assert [item.describe() for item in resolver.unmapped] == [
        "no-sku :: Single Smash ",
        "no-sku :: Single Smash Burger",
        "no-sku :: single smash",
    ]


def test_unmapped_pairs_are_remembered_once() -> None:
    resolver = CatalogResolver([])
    for _ in range(3):
        assert resolver.resolve("ZZ9", "Mystery Shake") is None
    assert [item.describe() for item in resolver.unmapped] == ["ZZ9 :: Mystery Shake"]


def test_alias_to_unknown_sku_is_unmapped() -> None:
    resolver = CatalogResolver([], {"Old Burger": "GONE"})
    assert resolver.resolve(None, "Old Burger") is None
    assert len(resolver.unmapped) == 1


def test_from_db_skips_inactive_entries() -> None:
    db = _make_session()
    db.add_all(
        [
            CatalogEntry(sku="C1", canonical_name="Crispy Chicken", category="burger",
                         composition_kind="chicken", grams_per_unit=Decimal("120"), rolls_per_unit=1),
            CatalogEntry(sku="X1", canonical_name="Retired Burger", category="burger", is_active=False),
            CatalogAlias(raw_name="Chicken Crunch", sku="C1"),
        ]
    )
    db.commit()

    resolver = CatalogResolver.from_db(db)
    rule = resolver.resolve(None, "Chicken Crunch")
    assert rule.sku == "C1"
    assert rule.grams_per_unit == Decimal("120")
    assert resolver.resolve("X1", "Retired Burger") is None
    db.close()
