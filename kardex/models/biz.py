from kardex.extensions import db
from .base import TenantModel

class Category(TenantModel):
    """商品分类"""
    __tablename__ = 'inv_categorias'
    nombre = db.Column(db.String(64), nullable=False)
    activo = db.Column(db.Boolean, default=True)

    products = db.relationship('Product', backref='categoria', lazy='dynamic')

class Supplier(TenantModel):
    """供应商"""
    __tablename__ = 'inv_proveedores'

    nombre = db.Column(db.String(128), index=True, nullable=False)
    rfc = db.Column(db.String(20))
    email = db.Column(db.String(128))
    telefono = db.Column(db.String(32))
    dias_credito = db.Column(db.Integer, default=0)
    activo = db.Column(db.Boolean, default=True)

class Product(TenantModel):
    """
    商品主表
    stock_actual 是流水 (kardex) 的派生缓存，只能由 InventoryService.apply_movement 修改。
    """
    __tablename__ = 'inv_productos'
    __table_args__ = (
        db.UniqueConstraint('organizacion_id', 'sku', name='uq_producto_org_sku'),
        db.UniqueConstraint('organizacion_id', 'codigo_barras', name='uq_producto_org_barras'),
    )

    sku = db.Column(db.String(64), index=True)
    codigo_barras = db.Column(db.String(64), index=True)
    nombre = db.Column(db.String(128), index=True, nullable=False)
    unidad_medida = db.Column(db.String(20), default='unidad')

    precio_venta = db.Column(db.Float, default=0.0)
    costo_unitario = db.Column(db.Float, default=0.0)  # 最近采购成本

    # 库存设置
    stock_actual = db.Column(db.Integer, default=0, nullable=False)
    stock_minimo = db.Column(db.Integer, default=0)
    stock_maximo = db.Column(db.Integer, default=0)
    # 自动补货
    auto_generar_oc = db.Column(db.Boolean, default=False)
    cantidad_oc_sugerida = db.Column(db.Integer)  # 为空时使用默认建议数量

    tiene_variantes = db.Column(db.Boolean, default=False)
    activo = db.Column(db.Boolean, default=True)

    categoria_id = db.Column(db.Integer, db.ForeignKey('inv_categorias.id'))
    proveedor_id = db.Column(db.Integer, db.ForeignKey('inv_proveedores.id'))  # 默认供应商

    proveedor = db.relationship('Supplier', foreign_keys=[proveedor_id])
    variantes = db.relationship('ProductVariant', backref='producto', lazy='dynamic')

    @property
    def bajo_minimo(self):
        return (self.stock_minimo or 0) > 0 and self.stock_actual <= self.stock_minimo

class ProductVariant(TenantModel):
    """商品变体 (颜色/尺码...)，stock_actual 与商品汇总库存由同一条流水同步"""
    __tablename__ = 'inv_variantes'
    __table_args__ = (
        db.UniqueConstraint('organizacion_id', 'sku', name='uq_variante_org_sku'),
    )

    producto_id = db.Column(db.Integer, db.ForeignKey('inv_productos.id'), nullable=False, index=True)
    nombre_variante = db.Column(db.String(128), nullable=False)
    sku = db.Column(db.String(64), index=True)
    codigo_barras = db.Column(db.String(64), index=True)

    costo_unitario = db.Column(db.Float)
    stock_actual = db.Column(db.Integer, default=0, nullable=False)
    activo = db.Column(db.Boolean, default=True)

    @property
    def costo_efectivo(self):
        if self.costo_unitario is not None:
            return self.costo_unitario
        return self.producto.costo_unitario or 0.0
