import enum
from datetime import datetime
from sqlalchemy import event
from kardex.extensions import db
from kardex.exceptions import InvalidState
from .base import TenantModel


class MovementType(enum.Enum):
    """
    库存流水类型
    每个成员自带方向 (sign)：entrada_* 为 +1，salida_* 为 -1。
    """
    ENTRADA_COMPRA = ('entrada_compra', 1)
    ENTRADA_DEVOLUCION = ('entrada_devolucion', 1)
    ENTRADA_AJUSTE = ('entrada_ajuste', 1)
    ENTRADA_TRANSFERENCIA = ('entrada_transferencia', 1)
    SALIDA_VENTA = ('salida_venta', -1)
    SALIDA_USO_SERVICIO = ('salida_uso_servicio', -1)
    SALIDA_MERMA = ('salida_merma', -1)
    SALIDA_ROBO = ('salida_robo', -1)
    SALIDA_DEVOLUCION = ('salida_devolucion', -1)
    SALIDA_AJUSTE = ('salida_ajuste', -1)
    SALIDA_TRANSFERENCIA = ('salida_transferencia', -1)

    def __new__(cls, code, sign):
        obj = object.__new__(cls)
        obj._value_ = code
        obj.sign = sign
        return obj

    @property
    def is_entry(self):
        return self.sign > 0

    @property
    def is_correction(self):
        """盘点/调整类流水，可用于修正历史负库存"""
        return self in (MovementType.ENTRADA_AJUSTE, MovementType.SALIDA_AJUSTE)

    @classmethod
    def adjustment_for(cls, delta):
        """根据差异方向选择调整类型"""
        return cls.ENTRADA_AJUSTE if delta > 0 else cls.SALIDA_AJUSTE

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


def partition_key(moment=None):
    """流水按月分区的路由键，例如 2026-10 -> 202610"""
    moment = moment or datetime.utcnow()
    return moment.year * 100 + moment.month


class Location(TenantModel):
    """
    仓库货位 (WMS)
    层级：zona -> pasillo -> estante -> bin，任一层级都可以存放库存。
    """
    __tablename__ = 'inv_ubicaciones'
    __table_args__ = (
        db.UniqueConstraint('organizacion_id', 'sucursal_id', 'codigo', name='uq_ubicacion_sucursal_codigo'),
    )

    TYPE_ZONE = 'zona'
    TYPE_AISLE = 'pasillo'
    TYPE_SHELF = 'estante'
    TYPE_BIN = 'bin'
    # 层级深度，子货位必须比父货位更深
    TYPE_LEVELS = {TYPE_ZONE: 1, TYPE_AISLE: 2, TYPE_SHELF: 3, TYPE_BIN: 4}

    sucursal_id = db.Column(db.Integer, nullable=False, index=True)
    parent_id = db.Column(db.Integer, db.ForeignKey('inv_ubicaciones.id'), index=True)

    codigo = db.Column(db.String(32), nullable=False)
    nombre = db.Column(db.String(128))
    descripcion = db.Column(db.String(255))
    tipo = db.Column(db.String(16), nullable=False)

    capacidad_maxima = db.Column(db.Integer)  # null 表示不限
    capacidad_ocupada = db.Column(db.Integer, default=0, nullable=False)

    es_picking = db.Column(db.Boolean, default=False)
    es_recepcion = db.Column(db.Boolean, default=False)
    es_despacho = db.Column(db.Boolean, default=False)
    es_cuarentena = db.Column(db.Boolean, default=False)
    es_devolucion = db.Column(db.Boolean, default=False)

    activo = db.Column(db.Boolean, default=True)
    bloqueada = db.Column(db.Boolean, default=False)
    orden = db.Column(db.Integer, default=0)

    parent = db.relationship('Location', remote_side='Location.id', backref='hijos')

    @property
    def capacidad_libre(self):
        if self.capacidad_maxima is None:
            return None
        return self.capacidad_maxima - (self.capacidad_ocupada or 0)

    def puede_recibir(self, cantidad):
        libre = self.capacidad_libre
        return libre is None or libre >= cantidad


class LocationStock(TenantModel):
    """货位库存：(货位, 商品, 批次) -> 数量"""
    __tablename__ = 'inv_stock_ubicaciones'
    __table_args__ = (
        db.UniqueConstraint('ubicacion_id', 'producto_id', 'lote', name='uq_stock_ubicacion_lote'),
    )

    ubicacion_id = db.Column(db.Integer, db.ForeignKey('inv_ubicaciones.id'), nullable=False, index=True)
    producto_id = db.Column(db.Integer, db.ForeignKey('inv_productos.id'), nullable=False, index=True)
    lote = db.Column(db.String(64))
    fecha_vencimiento = db.Column(db.Date)
    fecha_entrada = db.Column(db.DateTime, default=datetime.utcnow)

    cantidad = db.Column(db.Integer, default=0, nullable=False)

    ubicacion = db.relationship('Location', backref=db.backref('stocks', lazy='dynamic'))
    producto = db.relationship('Product')


class Movement(TenantModel):
    """
    库存流水 (kardex，核心表)
    每一次库存变动写且只写一行；写入后不可修改、不可删除。
    cantidad 带符号，stock_antes/stock_despues 为商品汇总库存快照。
    """
    __tablename__ = 'inv_movimientos'
    __table_args__ = (
        db.Index('ix_movimiento_org_periodo', 'organizacion_id', 'periodo'),
        db.Index('ix_movimiento_producto_fecha', 'producto_id', 'created_at'),
    )

    periodo = db.Column(db.Integer, nullable=False, default=partition_key)  # YYYYMM 分区键

    producto_id = db.Column(db.Integer, db.ForeignKey('inv_productos.id'), nullable=False)
    variante_id = db.Column(db.Integer, db.ForeignKey('inv_variantes.id'))
    ubicacion_id = db.Column(db.Integer, db.ForeignKey('inv_ubicaciones.id'))

    tipo_movimiento = db.Column(db.String(30), nullable=False, index=True)
    cantidad = db.Column(db.Integer, nullable=False)  # 变动数量 (+10, -5)
    stock_antes = db.Column(db.Integer, nullable=False)
    stock_despues = db.Column(db.Integer, nullable=False)

    costo_unitario = db.Column(db.Float, default=0.0)
    valor_total = db.Column(db.Float, default=0.0)

    lote = db.Column(db.String(64))
    fecha_vencimiento = db.Column(db.Date)

    # 来源单据
    proveedor_id = db.Column(db.Integer, db.ForeignKey('inv_proveedores.id'))
    orden_compra_id = db.Column(db.Integer, index=True)
    conteo_id = db.Column(db.Integer, index=True)
    ajuste_masivo_id = db.Column(db.Integer, index=True)
    reserva_id = db.Column(db.Integer, index=True)
    venta_id = db.Column(db.Integer, index=True)

    usuario_id = db.Column(db.Integer)  # 操作人
    referencia = db.Column(db.String(128))
    motivo = db.Column(db.String(255))

    producto = db.relationship('Product')
    variante = db.relationship('ProductVariant')
    ubicacion = db.relationship('Location')

    @property
    def tipo(self):
        return MovementType(self.tipo_movimiento)


@event.listens_for(Movement, 'before_update')
def _reject_movement_update(mapper, connection, target):
    raise InvalidState(f"Ledger row {target.id} is immutable")


@event.listens_for(Movement, 'before_delete')
def _reject_movement_delete(mapper, connection, target):
    raise InvalidState(f"Ledger row {target.id} cannot be deleted")
