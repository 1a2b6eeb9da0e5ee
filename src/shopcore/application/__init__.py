"""
Application services: tenant scopes, data access, cache coherence, stock and orders.
"""
from shopcore.application.cache_coherence import CacheCoherenceLayer, CacheKey
from shopcore.application.data_access import DataAccessLayer
from shopcore.application.facade import ShopDataLayer, create_shop_data_layer
from shopcore.application.order_service import LineRequest, OrderService
from shopcore.application.stock_engine import StockEngine
from shopcore.application.tenant_context import TenantContextManager

__all__ = [
    "CacheCoherenceLayer",
    "CacheKey",
    "DataAccessLayer",
    "LineRequest",
    "OrderService",
    "ShopDataLayer",
    "StockEngine",
    "TenantContextManager",
    "create_shop_data_layer",
]
