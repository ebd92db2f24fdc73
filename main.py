import asyncio
import logging
from decimal import Decimal
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, EmailStr, Field
from fastapi.concurrency import run_in_threadpool

from admin import AdminAggregator
from catalog import CatalogService
from config import CORS_ORIGINS, LOG_LEVEL, PORT
from errors import Forbidden, MarketplaceError, ValidationError
from identity import IdentityService
from lifecycle import OrderService
from notifications import NotificationRelay
from schemas import Role, User
from security import bearer_token
from storage import Storage, build_storage

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger("marketplace")

app = FastAPI(title="Local Delivery Marketplace API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.storage = build_storage()
app.state.relay = NotificationRelay()


# --------------------- Errors ---------------------

@app.exception_handler(MarketplaceError)
async def handle_marketplace_error(request: Request, exc: MarketplaceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def handle_request_validation(request: Request, exc: RequestValidationError):
    first = exc.errors()[0]
    field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    error = ValidationError(field or "body", first.get("msg"))
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# --------------------- Dependencies ---------------------

def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def get_relay(request: Request) -> NotificationRelay:
    return request.app.state.relay


def identity_service(storage: Storage = Depends(get_storage)) -> IdentityService:
    return IdentityService(storage)


def catalog_service(storage: Storage = Depends(get_storage)) -> CatalogService:
    return CatalogService(storage)


def order_service(
    storage: Storage = Depends(get_storage), relay: NotificationRelay = Depends(get_relay)
) -> OrderService:
    return OrderService(storage, relay)


def admin_aggregator(storage: Storage = Depends(get_storage)) -> AdminAggregator:
    return AdminAggregator(storage)


def get_current_user(
    authorization: Optional[str] = Header(None),
    identity: IdentityService = Depends(identity_service),
) -> User:
    return identity.resolve_session(bearer_token(authorization))


def require_roles(*roles: Role):
    label = " or ".join(r.value for r in roles)

    def dependency(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise Forbidden(f"Only {label} accounts can do this")
        return user

    return dependency


shopkeeper_only = require_roles(Role.SHOPKEEPER)
courier_only = require_roles(Role.COURIER)
customer_only = require_roles(Role.CUSTOMER)
admin_only = require_roles(Role.ADMIN)


# --------------------- Models ---------------------

class RegisterRequest(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    phone: str = Field(min_length=1)
    password: str = Field(min_length=6)
    role: Role = Role.CUSTOMER
    driving_license: Optional[str] = Field(
        None, validation_alias=AliasChoices("driving_license", "drivingLicense")
    )


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ShopCreate(BaseModel):
    name: str = ""
    address: str = ""
    phone: Optional[str] = None
    latitude: Optional[Decimal] = None
    longitude: Optional[Decimal] = None


class ProductCreate(BaseModel):
    name: str
    description: Optional[str] = None
    price: Decimal
    stock: int = 0
    category: str
    barcode: Optional[str] = None
    image_url: Optional[str] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = None
    stock: Optional[int] = None
    category: Optional[str] = None
    barcode: Optional[str] = None
    image_url: Optional[str] = None


class StatusUpdate(BaseModel):
    status: str


class OrderItemIn(BaseModel):
    product_id: str = Field(validation_alias=AliasChoices("product_id", "productId"))
    quantity: int = Field(ge=1)
    price: Optional[Decimal] = None


class OrderCreate(BaseModel):
    items: List[OrderItemIn]
    delivery_address: str = Field(
        validation_alias=AliasChoices("delivery_address", "deliveryAddress", "customerAddress")
    )
    shop_id: Optional[str] = Field(None, validation_alias=AliasChoices("shop_id", "shopId"))
    notes: Optional[str] = None
    total_amount: Optional[Decimal] = Field(None, validation_alias=AliasChoices("total_amount", "totalAmount"))


class ApprovalDecision(BaseModel):
    notes: Optional[str] = None


# --------------------- Routes ---------------------

@app.get("/")
def root():
    return {"message": "Local Delivery Marketplace API is running"}


@app.get("/test")
def test_database(storage: Storage = Depends(get_storage)):
    return {"backend": "Running", **storage.status()}


# Auth
@app.post("/api/auth/register")
def register(req: RegisterRequest, identity: IdentityService = Depends(identity_service)):
    return identity.register(req.name, req.email, req.phone, req.password, req.role, req.driving_license)


@app.post("/api/auth/login")
def login(req: LoginRequest, identity: IdentityService = Depends(identity_service)):
    return identity.login(req.email, req.password)


# Shops
@app.post("/api/shop")
def create_shop(
    body: ShopCreate,
    user: User = Depends(shopkeeper_only),
    identity: IdentityService = Depends(identity_service),
):
    shop = identity.create_shop(user, body.name, body.address, body.phone, body.latitude, body.longitude)
    return {"message": "Shop created successfully. Awaiting admin approval.", "shop": shop.model_dump(mode="json")}


@app.get("/api/shop/my-shop")
def my_shop(user: User = Depends(shopkeeper_only), identity: IdentityService = Depends(identity_service)):
    return identity.my_shop(user).model_dump(mode="json")


@app.get("/api/shops/nearby")
def nearby_shops(
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    radius: float = 10,
    identity: IdentityService = Depends(identity_service),
):
    shops = identity.nearby_shops(lat or 0, lng or 0, radius)
    return [s.model_dump(mode="json") for s in shops]


# Products
@app.post("/api/products")
def create_product(
    body: ProductCreate,
    user: User = Depends(shopkeeper_only),
    catalog: CatalogService = Depends(catalog_service),
):
    product = catalog.create_product(
        user,
        name=body.name,
        price=body.price,
        stock=body.stock,
        category=body.category,
        description=body.description,
        barcode=body.barcode,
        image_url=body.image_url,
    )
    return product.model_dump(mode="json")


@app.get("/api/shops/{shop_id}/products")
def list_shop_products(
    shop_id: str,
    user: User = Depends(require_roles(Role.SHOPKEEPER, Role.ADMIN)),
    catalog: CatalogService = Depends(catalog_service),
):
    return [p.model_dump(mode="json") for p in catalog.list_products(shop_id, user)]


@app.get("/api/shops/{shop_id}/products/public")
def list_public_products(shop_id: str, catalog: CatalogService = Depends(catalog_service)):
    return [p.model_dump(mode="json") for p in catalog.list_products(shop_id)]


@app.put("/api/products/{product_id}")
def update_product(
    product_id: str,
    body: ProductUpdate,
    user: User = Depends(shopkeeper_only),
    catalog: CatalogService = Depends(catalog_service),
):
    changes = body.model_dump(exclude_unset=True)
    return catalog.update_product(user, product_id, changes).model_dump(mode="json")


@app.delete("/api/products/{product_id}")
def delete_product(
    product_id: str,
    user: User = Depends(shopkeeper_only),
    catalog: CatalogService = Depends(catalog_service),
):
    catalog.delete_product(user, product_id)
    return {"message": "Product deleted successfully"}


@app.patch("/api/products/{product_id}/status")
def set_product_status(
    product_id: str,
    body: StatusUpdate,
    user: User = Depends(shopkeeper_only),
    catalog: CatalogService = Depends(catalog_service),
):
    product = catalog.set_product_status(user, product_id, body.status)
    return {"message": "Product status updated successfully", "product": product.model_dump(mode="json")}


# Orders
@app.get("/api/orders")
def list_orders(user: User = Depends(get_current_user), orders: OrderService = Depends(order_service)):
    return [o.model_dump(mode="json") for o in orders.list_for(user)]


@app.get("/api/orders/available")
def available_orders(user: User = Depends(courier_only), orders: OrderService = Depends(order_service)):
    return orders.list_available_for_couriers()


@app.post("/api/orders", status_code=201)
def place_order(
    body: OrderCreate,
    user: User = Depends(customer_only),
    orders: OrderService = Depends(order_service),
):
    order = orders.place_order(
        user,
        items=[i.model_dump() for i in body.items],
        delivery_address=body.delivery_address,
        shop_id=body.shop_id,
        notes=body.notes,
        submitted_total=body.total_amount,
    )
    return order.model_dump(mode="json")


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user: User = Depends(get_current_user), orders: OrderService = Depends(order_service)):
    return orders.get_order(user, order_id).model_dump(mode="json")


@app.post("/api/orders/{order_id}/accept")
def accept_order(order_id: str, user: User = Depends(shopkeeper_only), orders: OrderService = Depends(order_service)):
    order = orders.accept_order(user, order_id)
    return {"message": "Order accepted successfully", "order": order.model_dump(mode="json")}


@app.post("/api/orders/{order_id}/accept-delivery")
def accept_delivery(order_id: str, user: User = Depends(courier_only), orders: OrderService = Depends(order_service)):
    order = orders.claim_delivery(user, order_id)
    return {"message": "Order accepted for delivery", "order": order.model_dump(mode="json")}


@app.post("/api/orders/{order_id}/deliver")
def deliver_order(order_id: str, user: User = Depends(courier_only), orders: OrderService = Depends(order_service)):
    order = orders.mark_delivered(user, order_id)
    return {"message": "Order delivered", "order": order.model_dump(mode="json")}


@app.post("/api/orders/{order_id}/cancel")
def cancel_order(
    order_id: str,
    user: User = Depends(require_roles(Role.CUSTOMER, Role.SHOPKEEPER)),
    orders: OrderService = Depends(order_service),
):
    order = orders.cancel_order(user, order_id)
    return {"message": "Order cancelled", "order": order.model_dump(mode="json")}


@app.patch("/api/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    body: StatusUpdate,
    user: User = Depends(require_roles(Role.SHOPKEEPER, Role.COURIER)),
    orders: OrderService = Depends(order_service),
):
    order = orders.set_status(user, order_id, body.status)
    return {"message": "Order status updated successfully", "order": order.model_dump(mode="json")}


# Admin
@app.get("/api/admin/stats")
def admin_stats(user: User = Depends(admin_only), aggregator: AdminAggregator = Depends(admin_aggregator)):
    return aggregator.stats()


@app.get("/api/admin/users")
def admin_users(user: User = Depends(admin_only), aggregator: AdminAggregator = Depends(admin_aggregator)):
    return aggregator.users()


@app.get("/api/admin/shops")
def admin_shops(user: User = Depends(admin_only), aggregator: AdminAggregator = Depends(admin_aggregator)):
    return aggregator.shops()


@app.get("/api/admin/approvals")
@app.get("/api/admin/pending-approvals")
def admin_pending_approvals(
    user: User = Depends(admin_only), aggregator: AdminAggregator = Depends(admin_aggregator)
):
    return aggregator.pending_approvals()


@app.post("/api/admin/approvals/{approval_id}/{action}")
def decide_approval(
    approval_id: str,
    action: str,
    body: Optional[ApprovalDecision] = None,
    user: User = Depends(admin_only),
    identity: IdentityService = Depends(identity_service),
):
    approval = identity.decide_approval(approval_id, action, user, body.notes if body else None)
    return {"message": f"Approval {action}d successfully", "approval": approval.model_dump(mode="json")}


# Real-time channel
@app.websocket("/ws")
async def relay_socket(websocket: WebSocket, token: Optional[str] = None):
    storage: Storage = websocket.app.state.storage
    relay: NotificationRelay = websocket.app.state.relay
    try:
        user = await run_in_threadpool(IdentityService(storage).resolve_session, token or "")
    except MarketplaceError as e:
        logger.info(f"socket refused: {e.code}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    relay.bind_loop(asyncio.get_running_loop())
    logger.info(f"socket connected for {user.role.value} {user.id}")
    try:
        while True:
            message = await websocket.receive_json()
            event = message.get("event") if isinstance(message, dict) else None
            room = message.get("room") if isinstance(message, dict) else None
            if not isinstance(room, str) or not room:
                await websocket.send_json({"event": "error", "data": {"detail": "room is required"}})
            elif event == "join-room":
                relay.join(room, websocket)
                await websocket.send_json({"event": "joined", "room": room})
            elif event == "leave-room":
                relay.leave(room, websocket)
                await websocket.send_json({"event": "left", "room": room})
            else:
                await websocket.send_json({"event": "error", "data": {"detail": f"unknown event {event}"}})
    except WebSocketDisconnect:
        logger.info(f"socket disconnected for {user.id}")
    finally:
        relay.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
