"""
shopcore: tenant-scoped data access, cache coherence and stock consistency
for a multi-tenant shop platform.
"""
from shopcore.application import (
    CacheKey,
    LineRequest,
    ShopDataLayer,
    create_shop_data_layer,
)
from shopcore.domain.scope import ScopeHandle

__version__ = "0.1.0"

__all__ = [
    "CacheKey",
    "LineRequest",
    "ScopeHandle",
    "ShopDataLayer",
    "create_shop_data_layer",
]
