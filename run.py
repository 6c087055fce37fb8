import os
from kardex import create_app
from kardex.extensions import db
from kardex.models import (
    Category, Supplier, Product, ProductVariant,
    MovementType, Movement, Location, LocationStock,
    FolioSequence, Reservation,
    PurchaseOrder, PurchaseOrderItem, PurchaseReceipt,
    StockTake, StockTakeItem,
    BulkAdjustment, BulkAdjustmentItem,
)
from kardex.services.inventory_service import InventoryService
from kardex.services.reservation_service import ReservationService

# 从环境变量获取配置模式
# 支持 FLASK_ENV 或 FLASK_CONFIG
config_name = os.getenv('FLASK_ENV') or os.getenv('FLASK_CONFIG') or 'default'
if config_name in ('development', 'dev'):
    config_name = 'development'

app = create_app(config_name)

@app.shell_context_processor
def make_shell_context():
    """
    配置 Flask Shell 上下文。
    'flask shell' 中直接可用模型与核心服务。
    """
    return dict(
        db=db,
        app=app,
        Category=Category,
        Supplier=Supplier,
        Product=Product,
        ProductVariant=ProductVariant,
        MovementType=MovementType,
        Movement=Movement,
        Location=Location,
        LocationStock=LocationStock,
        FolioSequence=FolioSequence,
        Reservation=Reservation,
        PurchaseOrder=PurchaseOrder,
        PurchaseOrderItem=PurchaseOrderItem,
        PurchaseReceipt=PurchaseReceipt,
        StockTake=StockTake,
        StockTakeItem=StockTakeItem,
        BulkAdjustment=BulkAdjustment,
        BulkAdjustmentItem=BulkAdjustmentItem,
        InventoryService=InventoryService,
        ReservationService=ReservationService,
    )
