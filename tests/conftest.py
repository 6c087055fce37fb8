"""
pytest 公共夹具
每个测试使用独立的内存 SQLite 数据库 (TestingConfig)。
"""
import itertools
import pytest

from kardex import create_app
from kardex.extensions import db
from kardex.models.biz import Category, Supplier, Product, ProductVariant
from kardex.models.stock import MovementType
from kardex.services.inventory_service import InventoryService
from kardex.services.location_service import LocationService

TENANT = 1
OTHER_TENANT = 2
SUCURSAL = 1

_seq = itertools.count(1)


@pytest.fixture
def app():
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def make_category(app):
    def _make(nombre='General', tenant_id=TENANT):
        category = Category(organizacion_id=tenant_id, nombre=nombre)
        db.session.add(category)
        db.session.commit()
        return category
    return _make


@pytest.fixture
def make_supplier(app):
    def _make(nombre='Distribuidora Norte', tenant_id=TENANT, dias_credito=30):
        supplier = Supplier(organizacion_id=tenant_id, nombre=nombre, dias_credito=dias_credito)
        db.session.add(supplier)
        db.session.commit()
        return supplier
    return _make


@pytest.fixture
def make_product(app):
    """
    创建商品；stock > 0 时通过 entrada_compra 流水入库，保证缓存与流水一致
    """
    def _make(sku=None, stock=0, costo=10.0, tenant_id=TENANT, location_id=None, **fields):
        n = next(_seq)
        sku = sku or f'SKU-{n:04d}'
        product = Product(
            organizacion_id=tenant_id,
            sku=sku,
            nombre=fields.pop('nombre', f'Producto {sku}'),
            costo_unitario=costo,
            stock_actual=0,
            **fields
        )
        db.session.add(product)
        db.session.commit()
        if stock:
            InventoryService.apply_movement(tenant_id, product.id, MovementType.ENTRADA_COMPRA, stock,
                                            location_id=location_id)
        return product
    return _make


@pytest.fixture
def make_variant(app):
    def _make(product, sku, stock=0, costo=None):
        product.tiene_variantes = True
        variant = ProductVariant(organizacion_id=product.organizacion_id, producto_id=product.id,
                                 nombre_variante=sku, sku=sku, costo_unitario=costo, stock_actual=0)
        db.session.add(variant)
        db.session.commit()
        if stock:
            InventoryService.apply_movement(product.organizacion_id, product.id, MovementType.ENTRADA_COMPRA,
                                            stock, variant_id=variant.id)
        return variant
    return _make


@pytest.fixture
def make_location(app):
    def _make(codigo=None, tipo='bin', parent=None, tenant_id=TENANT, sucursal_id=SUCURSAL, **fields):
        data = dict(fields, sucursal_id=sucursal_id, codigo=codigo or f'L-{next(_seq):03d}', tipo=tipo,
                    parent_id=parent.id if parent is not None else None)
        return LocationService.create_location(tenant_id, data)
    return _make
