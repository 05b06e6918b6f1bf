"""
Server side pricing. Every path that turns a list of ``{item_id, quantity}``
into priced line items goes through :func:`price_items`, so client prices
are never used.
"""
from typing import Dict, Iterable, List, Tuple

from fastapi import HTTPException
from sqlalchemy.orm import Session

import models


def money(value) -> float:
    return round(float(value or 0), 2)


def price_items(db: Session, requested: Iterable) -> Tuple[List[Dict], float]:
    """
    Look up the current price and availability of every requested item.

    ``requested`` holds objects or dicts with ``item_id`` and ``quantity``.
    Returns ``(lines, total)`` where each line has ``menu_item``, ``menu_item_id``,
    ``quantity`` and ``price``. A missing or unavailable item rejects the whole
    request with a 400.
    """
    requested = [_as_pair(item) for item in requested]
    item_ids = {item_id for item_id, _ in requested}
    menu_items = {}
    if item_ids:
        menu_items = {
            m.id: m for m in db.query(models.MenuItem).filter(models.MenuItem.id.in_(item_ids)).all()
        }

    lines = []
    total = 0.0
    for item_id, quantity in requested:
        menu_item = menu_items.get(item_id)
        if not menu_item:
            raise HTTPException(status_code=400, detail=f"Item {item_id} not found")
        if not menu_item.available:
            raise HTTPException(status_code=400, detail=f"{menu_item.name} is currently unavailable")

        lines.append({
            "menu_item": menu_item,
            "menu_item_id": menu_item.id,
            "quantity": quantity,
            "price": money(menu_item.price),
        })
        total += menu_item.price * quantity

    return lines, money(total)


def order_subtotal(order: "models.Order") -> float:
    return money(sum(item.price * item.quantity for item in order.items))


def discount_for(subtotal: float, percent: float) -> float:
    return money(subtotal * (percent or 0) / 100)


def refresh_order_totals(order: "models.Order"):
    """Re-derive the stored total and discount of ``order`` from its line items."""
    order.total = order_subtotal(order)
    order.discount_amount = discount_for(order.total, order.discount_percent)


def _as_pair(item) -> Tuple[int, int]:
    if isinstance(item, dict):
        return int(item["item_id"]), int(item["quantity"])
    return int(item.item_id), int(item.quantity)
