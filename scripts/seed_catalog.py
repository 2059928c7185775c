"""Seed products and plans so processor price IDs resolve to a plan.

Usage:
    python scripts/seed_catalog.py catalog.json

``catalog.json`` is a list of products, each with a list of plans:

    [{"name": "Reports", "plans": [{"name": "Basic",
      "external_price_id": "price_123", "usage_limit": 1000,
      "feature_flags": {"export": true}}]}]
"""

import argparse
import json
from decimal import Decimal

from dotenv import load_dotenv

from app.db import SessionLocal
from app.models.billing import BillingPeriod, Plan, Product

DEFAULT_CATALOG = [
    {
        "name": "Default product",
        "plans": [
            {
                "name": "Starter",
                "external_price_id": "price_starter_monthly",
                "usage_limit": 1000,
                "feature_flags": {"export": False},
            },
            {
                "name": "Pro",
                "external_price_id": "price_pro_monthly",
                "usage_limit": 10000,
                "feature_flags": {"export": True},
            },
        ],
    }
]


def _ensure_product(db, name: str, description: str | None) -> Product:
    product = db.query(Product).filter(Product.name == name).first()
    if not product:
        product = Product(name=name, description=description, is_active=True)
        db.add(product)
        db.flush()
    elif not product.is_active:
        product.is_active = True
    return product


def _ensure_plan(db, product: Product, spec: dict) -> Plan:
    plan = (
        db.query(Plan)
        .filter(Plan.external_price_id == spec["external_price_id"])
        .first()
    )
    if not plan:
        plan = Plan(product_id=product.id, external_price_id=spec["external_price_id"])
        db.add(plan)
    plan.name = spec["name"]
    plan.usage_limit = int(spec.get("usage_limit", 0))
    percent = spec.get("soft_limit_percent")
    plan.soft_limit_percent = Decimal(str(percent)) if percent is not None else None
    plan.feature_flags = spec.get("feature_flags") or {}
    plan.billing_period = BillingPeriod(spec.get("billing_period", "month"))
    plan.price_amount = int(spec.get("price_amount", 0))
    plan.currency = spec.get("currency", "usd")
    plan.is_active = bool(spec.get("is_active", True))
    return plan


def seed_catalog(db, catalog: list[dict]) -> int:
    """Upsert every product and plan in ``catalog``; return the plan count."""
    count = 0
    for product_spec in catalog:
        product = _ensure_product(
            db, product_spec["name"], product_spec.get("description")
        )
        for plan_spec in product_spec.get("plans", []):
            _ensure_plan(db, product, plan_spec)
            count += 1
    db.commit()
    return count


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("catalog", nargs="?", help="Path to a catalog JSON file")
    args = parser.parse_args()

    load_dotenv()
    catalog = DEFAULT_CATALOG
    if args.catalog:
        with open(args.catalog, encoding="utf-8") as handle:
            catalog = json.load(handle)

    db = SessionLocal()
    try:
        count = seed_catalog(db, catalog)
        print(f"Catalog seed complete ({count} plans).")
    finally:
        db.close()


if __name__ == "__main__":
    main()
