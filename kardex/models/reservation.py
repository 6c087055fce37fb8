"""库存预留模型"""
from datetime import datetime
from kardex.extensions import db
from .base import TenantModel


class Reservation(TenantModel):
    """
    临时库存预留
    只减少可用库存，不写流水；确认时才通过 salida_venta 扣减实际库存。
    """
    __tablename__ = 'inv_reservas'
    __table_args__ = (
        db.Index('ix_reserva_producto_estado', 'producto_id', 'estado', 'expira_en'),
        db.Index('ix_reserva_origen', 'tipo_origen', 'origen_id'),
    )

    STATUS_ACTIVE = 'activa'
    STATUS_CONFIRMED = 'confirmada'
    STATUS_EXPIRED = 'expirada'
    STATUS_CANCELLED = 'cancelada'

    producto_id = db.Column(db.Integer, db.ForeignKey('inv_productos.id'), nullable=False)
    variante_id = db.Column(db.Integer, db.ForeignKey('inv_variantes.id'))
    sucursal_id = db.Column(db.Integer)

    cantidad = db.Column(db.Integer, nullable=False)
    tipo_origen = db.Column(db.String(32))  # carrito, venta, cita...
    origen_id = db.Column(db.Integer)
    usuario_id = db.Column(db.Integer)

    expira_en = db.Column(db.DateTime, nullable=False)
    estado = db.Column(db.String(16), default=STATUS_ACTIVE, nullable=False)

    movimiento_id = db.Column(db.Integer, db.ForeignKey('inv_movimientos.id'))
    confirmada_en = db.Column(db.DateTime)
    cancelada_en = db.Column(db.DateTime)

    producto = db.relationship('Product')
    variante = db.relationship('ProductVariant')
    movimiento = db.relationship('Movement')

    @property
    def is_active(self):
        return self.estado == self.STATUS_ACTIVE

    def is_expired(self, now=None):
        """活跃但已超过 expira_en，等待清扫"""
        return self.is_active and self.expira_en <= (now or datetime.utcnow())

    @property
    def minutos_restantes(self):
        if not self.is_active:
            return 0
        delta = self.expira_en - datetime.utcnow()
        return max(0, int(delta.total_seconds() // 60))
