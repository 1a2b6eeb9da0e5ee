from shopcore.domain.entities.category import Category
from shopcore.domain.entities.inventory_transaction import InventoryTransaction
from shopcore.domain.entities.order import CustomerSnapshot, Order, OrderLine
from shopcore.domain.entities.product import Product
from shopcore.domain.entities.tenant import Tenant

__all__ = [
    "Category",
    "CustomerSnapshot",
    "InventoryTransaction",
    "Order",
    "OrderLine",
    "Product",
    "Tenant",
]
