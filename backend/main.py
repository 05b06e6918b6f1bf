import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload
from starlette.concurrency import run_in_threadpool

import auth
import billing
import models
import orders
import sessions
from config import CORS_ORIGINS, RESTAURANT_NAME
from database import engine, get_db, init_default_admin, wait_for_db
from errors import install_error_handlers
from redis_client import CHANGE_ENTITIES, redis_client
from schemas import (
    AnnouncementCreate,
    AnnouncementResponse,
    BillGenerate,
    BillRequest,
    BillResponse,
    CategoryCreate,
    CategoryResponse,
    DiscountApply,
    GuestCheckIn,
    MenuItemCreate,
    MenuItemResponse,
    OrderCreate,
    OrderCreatedResponse,
    OrderEdit,
    OrderItemCreate,
    OrderItemQuantity,
    OrderResponse,
    OrderStatusUpdate,
    SessionResponse,
    SpecialCreate,
    SpecialResponse,
    sanitize_phone,
    user_response,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

app = FastAPI(title=f"{RESTAURANT_NAME} ordering API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_error_handlers(app)

require_kitchen = auth.require_roles(*auth.KITCHEN_ROLES)
require_admin = auth.require_roles(auth.ROLE_ADMIN)


@app.on_event("startup")
def startup_event():
    if wait_for_db():
        try:
            logger.info("Creating database tables...")
            models.Base.metadata.create_all(bind=engine)
            init_default_admin()
            logger.info("Database initialised")
        except Exception:
            logger.exception("Failed to initialise the database")
    else:
        logger.error("Database did not become available during startup")

    if redis_client.is_available():
        logger.info("Redis available")
    else:
        logger.warning("Redis unavailable, caching and the change feed are disabled")


@app.get("/health")
def health_check():
    return {"status": "ok", "message": "API is running"}


@app.get("/cache/info")
def get_cache_info():
    return redis_client.get_cache_info()


# ========== Menu ==========

def menu_item_response(item: models.MenuItem) -> MenuItemResponse:
    return MenuItemResponse(
        id=item.id,
        name=item.name,
        description=item.description,
        price=item.price,
        category_id=item.category_id,
        category_name=item.category.name if item.category else None,
        available=item.available,
        image_url=item.image_url,
    )


def _menu_query(db: Session):
    return db.query(models.MenuItem).options(selectinload(models.MenuItem.category)).outerjoin(
        models.Category
    ).order_by(models.Category.sort_order, models.MenuItem.name)


@app.get("/menu", response_model=List[MenuItemResponse])
def get_menu(include_unavailable: bool = False, db: Session = Depends(get_db)):
    if include_unavailable:
        return [menu_item_response(item) for item in _menu_query(db).all()]

    cached = redis_client.get_cached_menu()
    if cached:
        return [MenuItemResponse(**item) for item in cached]

    menu = [
        menu_item_response(item)
        for item in _menu_query(db).filter(models.MenuItem.available.is_(True)).all()
    ]
    redis_client.cache_menu([item.dict() for item in menu])
    return menu


@app.get("/menu/items/{item_id}", response_model=MenuItemResponse)
def get_menu_item(item_id: int, db: Session = Depends(get_db)):
    item = db.query(models.MenuItem).filter(models.MenuItem.id == item_id).first()
    if not item:
        raise HTTPException(status_code=404, detail="Menu item not found")
    return menu_item_response(item)


def _check_category(db: Session, category_id: Optional[int]):
    if category_id is not None and not db.query(models.Category).filter(models.Category.id == category_id).first():
        raise HTTPException(status_code=404, detail="Category not found")


@app.post("/menu/items", response_model=MenuItemResponse)
def create_menu_item(item: MenuItemCreate, db: Session = Depends(get_db),
                     current_user: models.User = Depends(require_admin)):
    _check_category(db, item.category_id)
    try:
        db_item = models.MenuItem(**item.dict())
        db.add(db_item)
        db.commit()
        db.refresh(db_item)
    except Exception:
        db.rollback()
        logger.exception("Error creating menu item")
        raise HTTPException(status_code=500, detail="Error creating menu item")

    redis_client.invalidate_menu_cache()
    logger.info("Menu item %s created by %s", db_item.id, current_user.id)
    return menu_item_response(db_item)


@app.put("/menu/items/{item_id}", response_model=MenuItemResponse)
def update_menu_item(item_id: int, item: MenuItemCreate, db: Session = Depends(get_db),
                     current_user: models.User = Depends(require_admin)):
    db_item = db.query(models.MenuItem).filter(models.MenuItem.id == item_id).first()
    if not db_item:
        raise HTTPException(status_code=404, detail="Menu item not found")
    _check_category(db, item.category_id)

    try:
        for key, value in item.dict().items():
            setattr(db_item, key, value)
        db.commit()
        db.refresh(db_item)
    except Exception:
        db.rollback()
        logger.exception("Error updating menu item %s", item_id)
        raise HTTPException(status_code=500, detail="Error updating menu item")

    redis_client.invalidate_menu_cache()
    return menu_item_response(db_item)


@app.delete("/menu/items/{item_id}")
def delete_menu_item(item_id: int, db: Session = Depends(get_db),
                     current_user: models.User = Depends(require_admin)):
    db_item = db.query(models.MenuItem).filter(models.MenuItem.id == item_id).first()
    if not db_item:
        raise HTTPException(status_code=404, detail="Menu item not found")

    ordered = db.query(models.OrderItem).filter(models.OrderItem.menu_item_id == item_id).first()
    try:
        if ordered:
            # Past orders still point at it
            db_item.available = False
            message = "Menu item has orders and was marked unavailable"
        else:
            db.delete(db_item)
            message = "Menu item deleted"
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Error deleting menu item %s", item_id)
        raise HTTPException(status_code=500, detail="Error deleting menu item")

    redis_client.invalidate_menu_cache()
    return {"success": True, "message": message}


@app.get("/categories", response_model=List[CategoryResponse])
def get_categories(db: Session = Depends(get_db)):
    return db.query(models.Category).order_by(models.Category.sort_order, models.Category.name).all()


@app.post("/categories", response_model=CategoryResponse)
def create_category(category: CategoryCreate, db: Session = Depends(get_db),
                    current_user: models.User = Depends(require_admin)):
    if db.query(models.Category).filter(models.Category.name == category.name).first():
        raise HTTPException(status_code=409, detail="Category already exists")
    try:
        db_category = models.Category(name=category.name, sort_order=category.sort_order)
        db.add(db_category)
        db.commit()
        db.refresh(db_category)
    except Exception:
        db.rollback()
        logger.exception("Error creating category")
        raise HTTPException(status_code=500, detail="Error creating category")

    redis_client.invalidate_menu_cache()
    return db_category


# ========== Specials ==========

def special_response(special: models.DailySpecial) -> SpecialResponse:
    return SpecialResponse(
        id=special.id,
        menu_item_id=special.menu_item_id,
        date=special.date,
        period=special.period,
        menu_item=menu_item_response(special.menu_item) if special.menu_item else None,
    )


@app.get("/specials", response_model=List[SpecialResponse])
def get_specials(day: Optional[date] = Query(None, alias="date"), db: Session = Depends(get_db)):
    day = day or datetime.utcnow().date()
    specials = db.query(models.DailySpecial).options(
        selectinload(models.DailySpecial.menu_item)
    ).filter(models.DailySpecial.date == day).order_by(models.DailySpecial.period).all()
    return [special_response(s) for s in specials]


@app.post("/specials", response_model=SpecialResponse)
def create_special(special: SpecialCreate, db: Session = Depends(get_db),
                   current_user: models.User = Depends(require_kitchen)):
    if not db.query(models.MenuItem).filter(models.MenuItem.id == special.menu_item_id).first():
        raise HTTPException(status_code=404, detail="Menu item not found")

    try:
        db_special = models.DailySpecial(
            menu_item_id=special.menu_item_id,
            period=special.period,
            date=special.date or datetime.utcnow().date(),
        )
        db.add(db_special)
        db.commit()
        db.refresh(db_special)
    except Exception:
        db.rollback()
        logger.exception("Error creating special")
        raise HTTPException(status_code=500, detail="Error creating special")
    return special_response(db_special)


@app.delete("/specials/{special_id}")
def delete_special(special_id: int, db: Session = Depends(get_db),
                   current_user: models.User = Depends(require_kitchen)):
    special = db.query(models.DailySpecial).filter(models.DailySpecial.id == special_id).first()
    if not special:
        raise HTTPException(status_code=404, detail="Special not found")
    db.delete(special)
    db.commit()
    return {"success": True, "message": "Special removed"}


# ========== Announcements ==========

@app.get("/announcements", response_model=List[AnnouncementResponse])
def get_announcements(db: Session = Depends(get_db)):
    return db.query(models.Announcement).filter(
        models.Announcement.active.is_(True)
    ).order_by(models.Announcement.created_at.desc()).all()


@app.get("/admin/announcements", response_model=List[AnnouncementResponse])
def get_all_announcements(db: Session = Depends(get_db), current_user: models.User = Depends(require_kitchen)):
    return db.query(models.Announcement).order_by(models.Announcement.created_at.desc()).all()


@app.post("/admin/announcements", response_model=AnnouncementResponse)
def create_announcement(announcement: AnnouncementCreate, db: Session = Depends(get_db),
                        current_user: models.User = Depends(require_kitchen)):
    try:
        db_announcement = models.Announcement(**announcement.dict())
        db.add(db_announcement)
        db.commit()
        db.refresh(db_announcement)
    except Exception:
        db.rollback()
        logger.exception("Error creating announcement")
        raise HTTPException(status_code=500, detail="Error creating announcement")
    return db_announcement


@app.delete("/admin/announcements/{announcement_id}")
def delete_announcement(announcement_id: int, db: Session = Depends(get_db),
                        current_user: models.User = Depends(require_kitchen)):
    announcement = db.query(models.Announcement).filter(models.Announcement.id == announcement_id).first()
    if not announcement:
        raise HTTPException(status_code=404, detail="Announcement not found")
    db.delete(announcement)
    db.commit()
    return {"success": True, "message": "Announcement deleted"}


# ========== Orders ==========

def _can_view(user: models.User, owner_id: int) -> bool:
    return user.id == owner_id or auth.normalize_role(user.role) in auth.KITCHEN_ROLES


@app.post("/orders", response_model=OrderCreatedResponse)
def create_order(order: OrderCreate, db: Session = Depends(get_db),
                 current_user: Optional[models.User] = Depends(auth.get_optional_user)):
    created = orders.order_response(orders.create_order(db, order, current_user))
    return OrderCreatedResponse(**created.dict(), orderId=created.id)


@app.get("/orders", response_model=List[OrderResponse])
def get_orders(user_id: int, db: Session = Depends(get_db),
               current_user: models.User = Depends(auth.get_current_user)):
    if not _can_view(current_user, user_id):
        raise HTTPException(status_code=403, detail="You can only view your own orders")
    return [orders.order_response(o) for o in orders.orders_for_user(db, user_id)]


@app.get("/orders/{order_id}", response_model=OrderResponse)
def get_order(order_id: int, db: Session = Depends(get_db),
              current_user: models.User = Depends(auth.get_current_user)):
    order = orders.get_order(db, order_id)
    if not _can_view(current_user, order.user_id):
        raise HTTPException(status_code=403, detail="You can only view your own orders")
    return orders.order_response(order)


@app.put("/orders/{order_id}", response_model=OrderResponse)
def edit_order(order_id: int, order_edit: OrderEdit, db: Session = Depends(get_db),
               current_user: Optional[models.User] = Depends(auth.get_optional_user)):
    return orders.order_response(orders.edit_order_by_customer(db, order_id, order_edit, current_user))


@app.put("/orders/{order_id}/status", response_model=OrderResponse)
def update_order_status(order_id: int, status_update: OrderStatusUpdate, db: Session = Depends(get_db),
                        current_user: models.User = Depends(require_kitchen)):
    return orders.order_response(orders.update_status(db, order_id, status_update.status))


@app.post("/orders/{order_id}/items", response_model=OrderResponse)
def add_order_item(order_id: int, item: OrderItemCreate, db: Session = Depends(get_db),
                   current_user: models.User = Depends(require_kitchen)):
    return orders.order_response(orders.add_item(db, order_id, item.item_id, item.quantity))


@app.put("/orders/{order_id}/items/{order_item_id}", response_model=OrderResponse)
def update_order_item(order_id: int, order_item_id: int, body: OrderItemQuantity, db: Session = Depends(get_db),
                      current_user: models.User = Depends(require_kitchen)):
    return orders.order_response(orders.change_item_quantity(db, order_id, order_item_id, body.quantity))


@app.delete("/orders/{order_id}/items/{order_item_id}", response_model=OrderResponse)
def delete_order_item(order_id: int, order_item_id: int, db: Session = Depends(get_db),
                      current_user: models.User = Depends(require_kitchen)):
    return orders.order_response(orders.remove_item(db, order_id, order_item_id))


@app.put("/orders/{order_id}/discount", response_model=OrderResponse)
def apply_order_discount(order_id: int, discount: DiscountApply, db: Session = Depends(get_db),
                         current_user: models.User = Depends(require_kitchen)):
    return orders.order_response(orders.apply_discount(db, order_id, discount.percent))


# ========== Kitchen board ==========

@app.get("/kitchen/orders", response_model=List[OrderResponse])
def kitchen_orders(db: Session = Depends(get_db), current_user: models.User = Depends(require_kitchen)):
    return [orders.order_response(o) for o in orders.active_orders(db)]


@app.get("/kitchen/orders/completed", response_model=List[OrderResponse])
def kitchen_completed_orders(db: Session = Depends(get_db), current_user: models.User = Depends(require_kitchen)):
    return [orders.order_response(o) for o in orders.completed_orders(db)]


@app.get("/kitchen/bill-requests", response_model=List[SessionResponse])
def kitchen_bill_requests(db: Session = Depends(get_db), current_user: models.User = Depends(require_kitchen)):
    return [sessions.session_response(s) for s in sessions.bill_requests(db)]


# ========== Guest sessions ==========

@app.post("/sessions/check-in")
def guest_check_in(check_in: GuestCheckIn, db: Session = Depends(get_db)):
    result = sessions.check_in(db, check_in)
    return {
        "success": True,
        "user": user_response(result["user"]),
        "session": sessions.session_response(result["session"]),
        "access_token": result["token"],
        "token_type": "bearer",
        "resumed": result["resumed"],
    }


@app.get("/sessions/active")
def get_active_session(phone: Optional[str] = None, user_id: Optional[int] = None,
                       db: Session = Depends(get_db)):
    session = sessions.get_active_session(db, phone=sanitize_phone(phone) if phone else None, user_id=user_id)
    return {
        "success": True,
        "active": session is not None,
        "session": sessions.session_response(session) if session else None,
    }


@app.get("/sessions/{session_id}", response_model=SessionResponse)
def get_session(session_id: int, db: Session = Depends(get_db),
                current_user: models.User = Depends(auth.get_current_user)):
    session = sessions.get_session(db, session_id)
    if not _can_view(current_user, session.user_id):
        raise HTTPException(status_code=403, detail="You do not have access to this resource")
    return sessions.session_response(session)


# ========== Bills ==========

@app.post("/bills/request", response_model=SessionResponse)
def request_bill(body: BillRequest, db: Session = Depends(get_db),
                 current_user: models.User = Depends(auth.get_current_user)):
    return sessions.session_response(sessions.request_bill(db, body.session_id, current_user))


@app.post("/bills/generate")
def generate_bill(body: BillGenerate, db: Session = Depends(get_db),
                  current_user: models.User = Depends(require_kitchen)):
    bill, already_billed = billing.generate_bill(
        db, session_id=body.session_id, user_id=body.user_id, payment_method=body.payment_method,
    )
    return {
        "success": True,
        "already_billed": already_billed,
        "bill": billing.bill_response(bill),
    }


@app.post("/bills/{bill_id}/print")
def print_bill(bill_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(require_kitchen)):
    return {"success": True, "message": "Bill formatted for printing", "print_data": billing.print_bill(db, bill_id)}


@app.get("/bills/{bill_id}", response_model=BillResponse)
def get_bill(bill_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(auth.get_current_user)):
    bill = billing.get_bill(db, bill_id)
    if not _can_view(current_user, bill.user_id):
        raise HTTPException(status_code=403, detail="You do not have access to this resource")
    return billing.bill_response(bill)


@app.get("/bills", response_model=List[BillResponse])
def list_bills(limit: int = Query(50, ge=1, le=500), offset: int = Query(0, ge=0),
               db: Session = Depends(get_db), current_user: models.User = Depends(require_kitchen)):
    return [billing.bill_response(b) for b in billing.list_bills(db, limit=limit, offset=offset)]


# ========== Analytics ==========

@app.get("/admin/analytics")
def get_analytics(date_from: Optional[date] = None, date_to: Optional[date] = None,
                  db: Session = Depends(get_db), current_user: models.User = Depends(require_admin)):
    today = datetime.utcnow().date()
    date_from = date_from or today
    date_to = date_to or date_from
    if date_to < date_from:
        raise HTTPException(status_code=400, detail="date_to must not be before date_from")

    start = datetime.combine(date_from, datetime.min.time())
    end = datetime.combine(date_to, datetime.min.time()) + timedelta(days=1)

    bill_count, revenue, discounts = db.query(
        func.count(models.Bill.id),
        func.coalesce(func.sum(models.Bill.final_total), 0),
        func.coalesce(func.sum(models.Bill.discount_amount), 0),
    ).filter(models.Bill.created_at >= start, models.Bill.created_at < end).one()

    status_counts = dict(
        db.query(models.Order.status, func.count(models.Order.id))
        .filter(models.Order.created_at >= start, models.Order.created_at < end)
        .group_by(models.Order.status)
        .all()
    )

    staff_meals = db.query(func.count(models.Order.id)).filter(
        models.Order.created_at >= start,
        models.Order.created_at < end,
        models.Order.notes == models.REGULAR_STAFF_MEAL,
    ).scalar()

    quantity = func.sum(models.OrderItem.quantity)
    top_items = (
        db.query(models.MenuItem.name, quantity.label("quantity"))
        .join(models.OrderItem, models.OrderItem.menu_item_id == models.MenuItem.id)
        .join(models.Order, models.Order.id == models.OrderItem.order_id)
        .filter(
            models.Order.created_at >= start,
            models.Order.created_at < end,
            models.Order.status != models.ORDER_CANCELLED,
        )
        .group_by(models.MenuItem.name)
        .order_by(quantity.desc())
        .limit(5)
        .all()
    )

    return {
        "date_from": date_from.isoformat(),
        "date_to": date_to.isoformat(),
        "revenue": round(float(revenue), 2),
        "discounts": round(float(discounts), 2),
        "bills": bill_count,
        "orders_by_status": {s: status_counts.get(s, 0) for s in models.ORDER_STATUSES},
        "staff_meals": staff_meals or 0,
        "top_items": [{"name": name, "quantity": int(qty)} for name, qty in top_items],
    }


# ========== Change feed ==========

_FEED_END = object()


async def _wait_for_disconnect(websocket: WebSocket):
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@app.websocket("/ws/{entity}")
async def change_feed(websocket: WebSocket, entity: str):
    """
    Stream change events for ``entity``. Query parameters filter events,
    e.g. ``/ws/orders?user_id=7``. Events carry ids only; clients re-fetch.
    """
    if entity not in CHANGE_ENTITIES:
        await websocket.close(code=4404)
        return

    await websocket.accept()
    if not redis_client.is_available():
        await websocket.send_json({"error": "Change feed unavailable"})
        await websocket.close(code=1011)
        return

    filters = dict(websocket.query_params)
    events = redis_client.subscribe(entity, filters)
    # idle polls yield None, so a silent client is only noticed through receive()
    disconnected = asyncio.ensure_future(_wait_for_disconnect(websocket))
    try:
        while not disconnected.done():
            event = await run_in_threadpool(next, events, _FEED_END)
            if disconnected.done():
                break
            if event is _FEED_END:
                disconnected.cancel()
                await websocket.close()
                break
            if event is None:
                continue
            await websocket.send_json(event)
        if disconnected.done() and not disconnected.cancelled():
            logger.info("Change feed client for %s disconnected", entity)
    except WebSocketDisconnect:
        logger.info("Change feed client for %s disconnected", entity)
    finally:
        disconnected.cancel()
        events.close()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
