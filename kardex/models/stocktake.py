"""盘点相关模型"""
from kardex.extensions import db
from .base import TenantModel


class StockTake(TenantModel):
    """盘点单 (conteo físico)"""
    __tablename__ = 'inv_conteos'
    __table_args__ = (
        db.UniqueConstraint('organizacion_id', 'folio', name='uq_conteo_folio'),
    )

    TYPE_TOTAL = 'total'                # 全盘
    TYPE_CATEGORY = 'por_categoria'     # 按分类
    TYPE_LOCATION = 'por_ubicacion'     # 按货位
    TYPE_CYCLE = 'ciclico'              # 循环盘点 (指定商品)
    TYPE_RANDOM = 'aleatorio'           # 随机抽盘
    TYPES = (TYPE_TOTAL, TYPE_CATEGORY, TYPE_LOCATION, TYPE_CYCLE, TYPE_RANDOM)

    STATUS_DRAFT = 'borrador'
    STATUS_IN_PROGRESS = 'en_proceso'
    STATUS_COMPLETED = 'completado'
    STATUS_ADJUSTED = 'ajustado'
    STATUS_CANCELLED = 'cancelado'

    folio = db.Column(db.String(32), index=True)
    sucursal_id = db.Column(db.Integer)
    nombre = db.Column(db.String(128))

    tipo_conteo = db.Column(db.String(20), default=TYPE_TOTAL)
    estado = db.Column(db.String(20), default=STATUS_DRAFT, index=True)

    # 盘点范围: categoria_ids / ubicacion_ids / producto_ids / cantidad_muestra / solo_con_stock
    filtros = db.Column(db.JSON)

    fecha_programada = db.Column(db.Date)
    iniciado_en = db.Column(db.DateTime)
    completado_en = db.Column(db.DateTime)
    ajustado_en = db.Column(db.DateTime)
    cancelado_en = db.Column(db.DateTime)

    creado_por = db.Column(db.Integer)
    ajustado_por = db.Column(db.Integer)

    # 统计
    total_items = db.Column(db.Integer, default=0)
    items_contados = db.Column(db.Integer, default=0)
    items_con_diferencia = db.Column(db.Integer, default=0)
    valor_diferencia = db.Column(db.Float, default=0.0)

    notas = db.Column(db.Text)

    items = db.relationship('StockTakeItem', backref='conteo', cascade='all, delete-orphan',
                            order_by='StockTakeItem.id')

    @property
    def progreso(self):
        """盘点进度百分比"""
        if not self.total_items:
            return 0
        return round(self.items_contados / self.total_items * 100, 1)


class StockTakeItem(TenantModel):
    """盘点明细"""
    __tablename__ = 'inv_conteos_items'

    STATUS_PENDING = 'pendiente'
    STATUS_COUNTED = 'contado'
    STATUS_ADJUSTED = 'ajustado'

    conteo_id = db.Column(db.Integer, db.ForeignKey('inv_conteos.id'), nullable=False, index=True)
    producto_id = db.Column(db.Integer, db.ForeignKey('inv_productos.id'), nullable=False)
    variante_id = db.Column(db.Integer, db.ForeignKey('inv_variantes.id'))
    ubicacion_id = db.Column(db.Integer, db.ForeignKey('inv_ubicaciones.id'))

    cantidad_sistema = db.Column(db.Integer, default=0)  # 开始盘点时的系统数量
    cantidad_contada = db.Column(db.Integer)             # null 表示未盘
    diferencia = db.Column(db.Integer, default=0)
    costo_unitario = db.Column(db.Float, default=0.0)
    valor_diferencia = db.Column(db.Float, default=0.0)

    estado = db.Column(db.String(16), default=STATUS_PENDING)
    contado_en = db.Column(db.DateTime)
    contado_por = db.Column(db.Integer)
    notas = db.Column(db.String(255))

    movimiento_id = db.Column(db.Integer, db.ForeignKey('inv_movimientos.id'))

    producto = db.relationship('Product')
    variante = db.relationship('ProductVariant')
    ubicacion = db.relationship('Location')

    @property
    def tipo_diferencia(self):
        """差异类型"""
        if self.diferencia > 0:
            return 'sobrante'   # 盘盈
        elif self.diferencia < 0:
            return 'faltante'   # 盘亏
        return 'correcto'
