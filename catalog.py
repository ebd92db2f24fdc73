import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from errors import Forbidden, NotFound, ValidationError
from schemas import Product, ProductStatus, Role, Shop, User
from storage import Storage

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("name", "description", "price", "stock", "category", "barcode", "image_url")


def validate_product_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Check the fields present in `fields`, reporting the first bad one."""
    clean = dict(fields)
    if "name" in clean:
        if not isinstance(clean["name"], str) or not clean["name"].strip():
            raise ValidationError("name", "Product name is required")
        clean["name"] = clean["name"].strip()
    if "price" in clean:
        try:
            price = Decimal(str(clean["price"]))
        except (InvalidOperation, ValueError):
            raise ValidationError("price", "Price must be a number")
        if not price.is_finite() or price <= 0:
            raise ValidationError("price", "Price must be greater than 0")
        clean["price"] = price
    if "stock" in clean:
        stock = clean["stock"]
        if isinstance(stock, bool) or not isinstance(stock, int) or stock < 0:
            raise ValidationError("stock", "Stock must be a whole number of at least 0")
    if "category" in clean:
        if not isinstance(clean["category"], str) or not clean["category"].strip():
            raise ValidationError("category", "Category is required")
        clean["category"] = clean["category"].strip()
    return clean


class CatalogService:
    def __init__(self, storage: Storage):
        self.storage = storage

    def _own_shop(self, user: User) -> Shop:
        if user.role != Role.SHOPKEEPER:
            raise Forbidden("Only shopkeepers can manage products")
        shop = self.storage.get_shop_by_owner(user.id)
        if shop is None:
            raise NotFound("shop")
        return shop

    def _own_product(self, user: User, product_id: str) -> Product:
        shop = self._own_shop(user)
        product = self.storage.get_product(product_id)
        if product is None:
            raise NotFound("product")
        if product.shop_id != shop.id:
            raise Forbidden()
        return product

    def create_product(
        self,
        user: User,
        name: str,
        price: Any,
        stock: int,
        category: str,
        description: Optional[str] = None,
        barcode: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> Product:
        shop = self._own_shop(user)
        fields = validate_product_fields({"name": name, "price": price, "stock": stock, "category": category})
        product = self.storage.create_product(Product(
            shop_id=shop.id,
            description=description,
            barcode=barcode,
            image_url=image_url,
            status=ProductStatus.ACTIVE,
            **fields,
        ))
        logger.info(f"product {product.id} added to shop {shop.id}")
        return product

    def update_product(self, user: User, product_id: str, changes: Dict[str, Any]) -> Product:
        self._own_product(user, product_id)
        fields = validate_product_fields({k: v for k, v in changes.items() if k in EDITABLE_FIELDS})
        updated = self.storage.update_product(product_id, fields)
        if updated is None:
            raise NotFound("product")
        return updated

    def delete_product(self, user: User, product_id: str) -> None:
        self._own_product(user, product_id)
        if not self.storage.delete_product(product_id):
            raise NotFound("product")
        logger.info(f"product {product_id} deleted by {user.id}")

    def set_product_status(self, user: User, product_id: str, status: str) -> Product:
        self._own_product(user, product_id)
        try:
            status = ProductStatus(status)
        except ValueError:
            raise ValidationError("status", "Status must be 'active' or 'inactive'")
        updated = self.storage.update_product(product_id, {"status": status})
        if updated is None:
            raise NotFound("product")
        return updated

    def list_products(self, shop_id: str, viewer: Optional[User] = None) -> List[Product]:
        """Owner and admin see every product, everyone else only active ones."""
        if viewer is None:
            return self.storage.list_products(shop_id, active_only=True)
        if viewer.role == Role.ADMIN:
            return self.storage.list_products(shop_id)
        if viewer.role == Role.SHOPKEEPER:
            shop = self.storage.get_shop_by_owner(viewer.id)
            if shop is None or shop.id != shop_id:
                raise Forbidden()
            return self.storage.list_products(shop_id)
        raise Forbidden()
