# 按照依赖顺序导入
from .base import BaseModel, TenantModel
from .biz import Category, Supplier, Product, ProductVariant
from .stock import MovementType, Movement, Location, LocationStock
from .sys import FolioSequence

# 预留
from .reservation import Reservation

# 采购管理
from .purchase import PurchaseOrder, PurchaseOrderItem, PurchaseReceipt, PurchasePriceHistory

# 盘点管理
from .stocktake import StockTake, StockTakeItem

# 批量调整
from .adjustment import BulkAdjustment, BulkAdjustmentItem
