"""批量调整 (CSV) 模型"""
from kardex.extensions import db
from .base import TenantModel


class BulkAdjustment(TenantModel):
    """批量库存调整单"""
    __tablename__ = 'inv_ajustes_masivos'
    __table_args__ = (
        db.UniqueConstraint('organizacion_id', 'folio', name='uq_ajuste_masivo_folio'),
    )

    STATUS_PENDING = 'pendiente'
    STATUS_VALIDATED = 'validado'
    STATUS_APPLIED = 'aplicado'
    STATUS_WITH_ERRORS = 'con_errores'

    folio = db.Column(db.String(32), index=True)
    sucursal_id = db.Column(db.Integer)
    archivo_nombre = db.Column(db.String(255))
    motivo_general = db.Column(db.String(255))
    estado = db.Column(db.String(16), default=STATUS_PENDING, index=True)

    total_filas = db.Column(db.Integer, default=0)
    filas_validas = db.Column(db.Integer, default=0)
    filas_error = db.Column(db.Integer, default=0)
    filas_aplicadas = db.Column(db.Integer, default=0)
    valor_total = db.Column(db.Float, default=0.0)

    usuario_id = db.Column(db.Integer)
    validado_en = db.Column(db.DateTime)
    aplicado_en = db.Column(db.DateTime)

    items = db.relationship('BulkAdjustmentItem', backref='ajuste', cascade='all, delete-orphan',
                            order_by='BulkAdjustmentItem.fila_numero')


class BulkAdjustmentItem(TenantModel):
    """批量调整明细：CSV 原始值 + 解析结果"""
    __tablename__ = 'inv_ajustes_masivos_items'

    STATUS_PENDING = 'pendiente'
    STATUS_VALID = 'valido'
    STATUS_ERROR = 'error'
    STATUS_APPLIED = 'aplicado'

    ERROR_INVALID_QTY = 'cantidad_invalida'
    ERROR_PRODUCT_NOT_FOUND = 'producto_no_encontrado'
    ERROR_PRODUCT_AMBIGUOUS = 'producto_ambiguo'
    ERROR_LOCATION_NOT_FOUND = 'ubicacion_no_encontrada'
    ERROR_INSUFFICIENT_STOCK = 'stock_insuficiente'
    ERROR_VALIDATION = 'error_validacion'
    ERROR_APPLY = 'error_aplicacion'

    ajuste_id = db.Column(db.Integer, db.ForeignKey('inv_ajustes_masivos.id'), nullable=False, index=True)
    fila_numero = db.Column(db.Integer, nullable=False)

    # CSV 原始值
    sku_csv = db.Column(db.String(64))
    codigo_barras_csv = db.Column(db.String(64))
    cantidad_csv = db.Column(db.String(32))
    motivo_csv = db.Column(db.String(255))
    ubicacion_csv = db.Column(db.String(32))

    # 解析结果
    producto_id = db.Column(db.Integer, db.ForeignKey('inv_productos.id'))
    variante_id = db.Column(db.Integer, db.ForeignKey('inv_variantes.id'))
    ubicacion_id = db.Column(db.Integer, db.ForeignKey('inv_ubicaciones.id'))
    cantidad_ajuste = db.Column(db.Integer)
    stock_antes = db.Column(db.Integer)
    stock_despues = db.Column(db.Integer)
    costo_unitario = db.Column(db.Float)
    valor_ajuste = db.Column(db.Float)

    estado = db.Column(db.String(16), default=STATUS_PENDING)
    error_tipo = db.Column(db.String(32))
    error_mensaje = db.Column(db.String(255))

    movimiento_id = db.Column(db.Integer, db.ForeignKey('inv_movimientos.id'))

    producto = db.relationship('Product')
    variante = db.relationship('ProductVariant')
    ubicacion = db.relationship('Location')

    def mark_error(self, tipo, mensaje):
        self.estado = self.STATUS_ERROR
        self.error_tipo = tipo
        self.error_mensaje = (mensaje or '')[:255]
