"""Tests for the catalog seed script."""

import importlib.util
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.models.billing import Plan, Product


@pytest.fixture(scope="module")
def seed_module():
    spec = importlib.util.spec_from_file_location(
        "seed_catalog", "scripts/seed_catalog.py"
    )
    mod = importlib.util.module_from_spec(spec)  # type: ignore[arg-type]
    spec.loader.exec_module(mod)  # type: ignore[union-attr]
    return mod


CATALOG = [
    {
        "name": "Reports",
        "plans": [
            {
                "name": "Basic",
                "external_price_id": "price_reports_basic",
                "usage_limit": 100,
                "soft_limit_percent": 0.2,
                "feature_flags": {"export": True},
            }
        ],
    }
]


def test_seed_creates_products_and_plans(db_session, seed_module):
    assert seed_module.seed_catalog(db_session, CATALOG) == 1

    product = db_session.scalars(select(Product)).one()
    plan = db_session.scalars(select(Plan)).one()
    assert product.name == "Reports"
    assert plan.product_id == product.id
    assert plan.usage_limit == 100
    assert plan.soft_limit_percent == Decimal("0.2")
    assert plan.feature_flags == {"export": True}


def test_seed_is_idempotent_and_updates_plans(db_session, seed_module):
    seed_module.seed_catalog(db_session, CATALOG)
    changed = [
        {
            "name": "Reports",
            "plans": [dict(CATALOG[0]["plans"][0], usage_limit=250)],
        }
    ]

    seed_module.seed_catalog(db_session, changed)

    assert len(db_session.scalars(select(Product)).all()) == 1
    plan = db_session.scalars(select(Plan)).one()
    db_session.refresh(plan)
    assert plan.usage_limit == 250


def test_default_catalog_seeds(db_session, seed_module):
    assert seed_module.seed_catalog(db_session, seed_module.DEFAULT_CATALOG) == 2
