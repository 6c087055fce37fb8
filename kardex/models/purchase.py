"""采购管理模型"""
from datetime import datetime
from kardex.extensions import db
from .base import TenantModel


class PurchaseOrder(TenantModel):
    """采购订单"""
    __tablename__ = 'inv_ordenes_compra'
    __table_args__ = (
        db.UniqueConstraint('organizacion_id', 'folio', name='uq_orden_compra_folio'),
    )

    STATUS_DRAFT = 'borrador'                       # 草稿
    STATUS_PENDING_APPROVAL = 'pendiente_aprobacion'  # 待审批
    STATUS_SENT = 'enviada'                         # 已发给供应商
    STATUS_PARTIAL = 'parcial'                      # 部分到货
    STATUS_RECEIVED = 'recibida'                    # 已收货
    STATUS_CANCELLED = 'cancelada'                  # 已取消
    # 未完成 (仍可能到货)
    OPEN_STATUSES = (STATUS_DRAFT, STATUS_PENDING_APPROVAL, STATUS_SENT, STATUS_PARTIAL)

    PAYMENT_PENDING = 'pendiente'
    PAYMENT_PARTIAL = 'parcial'
    PAYMENT_PAID = 'pagado'

    folio = db.Column(db.String(32), index=True)
    proveedor_id = db.Column(db.Integer, db.ForeignKey('inv_proveedores.id'), nullable=False)
    sucursal_id = db.Column(db.Integer)

    estado = db.Column(db.String(24), default=STATUS_DRAFT, index=True)

    # 金额
    subtotal = db.Column(db.Float, default=0.0)
    descuento_porcentaje = db.Column(db.Float, default=0.0)
    descuento_monto = db.Column(db.Float, default=0.0)
    impuestos = db.Column(db.Float, default=0.0)
    total = db.Column(db.Float, default=0.0)

    # 付款
    monto_pagado = db.Column(db.Float, default=0.0)
    estado_pago = db.Column(db.String(16), default=PAYMENT_PENDING)
    dias_credito = db.Column(db.Integer, default=0)

    fecha_entrega_esperada = db.Column(db.Date)
    enviada_en = db.Column(db.DateTime)
    recibida_en = db.Column(db.DateTime)
    cancelada_en = db.Column(db.DateTime)

    notas = db.Column(db.Text)
    referencia_proveedor = db.Column(db.String(64))
    usuario_id = db.Column(db.Integer)

    proveedor = db.relationship('Supplier')
    items = db.relationship('PurchaseOrderItem', backref='orden', cascade='all, delete-orphan',
                            order_by='PurchaseOrderItem.id')

    @property
    def saldo_pendiente(self):
        return round((self.total or 0) - (self.monto_pagado or 0), 2)

    @property
    def progreso_recepcion(self):
        """收货进度百分比"""
        ordered = sum(item.cantidad_ordenada for item in self.items)
        received = sum(item.cantidad_recibida for item in self.items)
        if ordered == 0:
            return 0
        return round(received / ordered * 100, 1)


class PurchaseOrderItem(TenantModel):
    """采购订单明细"""
    __tablename__ = 'inv_ordenes_compra_items'

    STATUS_PENDING = 'pendiente'
    STATUS_PARTIAL = 'parcial'
    STATUS_COMPLETE = 'completo'
    STATUS_CANCELLED = 'cancelado'

    orden_id = db.Column(db.Integer, db.ForeignKey('inv_ordenes_compra.id'), nullable=False, index=True)
    producto_id = db.Column(db.Integer, db.ForeignKey('inv_productos.id'), nullable=False)
    variante_id = db.Column(db.Integer, db.ForeignKey('inv_variantes.id'))

    # 下单时的商品快照
    nombre_producto = db.Column(db.String(128))
    sku = db.Column(db.String(64))

    cantidad_ordenada = db.Column(db.Integer, nullable=False)
    cantidad_recibida = db.Column(db.Integer, default=0, nullable=False)  # 只增不减
    precio_unitario = db.Column(db.Float, default=0.0)
    descuento_porcentaje = db.Column(db.Float, default=0.0)

    estado = db.Column(db.String(16), default=STATUS_PENDING)
    lote = db.Column(db.String(64))
    fecha_vencimiento = db.Column(db.Date)
    notas = db.Column(db.String(255))

    producto = db.relationship('Product')
    variante = db.relationship('ProductVariant')

    @property
    def subtotal(self):
        gross = self.cantidad_ordenada * (self.precio_unitario or 0)
        return round(gross * (1 - (self.descuento_porcentaje or 0) / 100), 2)

    @property
    def cantidad_pendiente(self):
        """待收货数量"""
        return self.cantidad_ordenada - (self.cantidad_recibida or 0)


class PurchaseReceipt(TenantModel):
    """收货记录：每一行收货对应一条 entrada_compra 流水"""
    __tablename__ = 'inv_recepciones_compra'

    orden_id = db.Column(db.Integer, db.ForeignKey('inv_ordenes_compra.id'), nullable=False, index=True)
    item_id = db.Column(db.Integer, db.ForeignKey('inv_ordenes_compra_items.id'), nullable=False)
    movimiento_id = db.Column(db.Integer, db.ForeignKey('inv_movimientos.id'))
    ubicacion_id = db.Column(db.Integer, db.ForeignKey('inv_ubicaciones.id'))

    cantidad = db.Column(db.Integer, nullable=False)
    precio_unitario = db.Column(db.Float)
    lote = db.Column(db.String(64))
    fecha_vencimiento = db.Column(db.Date)
    usuario_id = db.Column(db.Integer)
    recibido_en = db.Column(db.DateTime, default=datetime.utcnow)

    orden = db.relationship('PurchaseOrder', backref=db.backref('recepciones', lazy='dynamic'))
    item = db.relationship('PurchaseOrderItem')
    movimiento = db.relationship('Movement')


class PurchasePriceHistory(TenantModel):
    """采购价格历史"""
    __tablename__ = 'inv_historial_precios_compra'

    producto_id = db.Column(db.Integer, db.ForeignKey('inv_productos.id'), index=True)
    proveedor_id = db.Column(db.Integer, db.ForeignKey('inv_proveedores.id'))
    orden_id = db.Column(db.Integer, db.ForeignKey('inv_ordenes_compra.id'))

    precio = db.Column(db.Float)
    fecha = db.Column(db.Date, default=lambda: datetime.utcnow().date())

    producto = db.relationship('Product')
    proveedor = db.relationship('Supplier')
