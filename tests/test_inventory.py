from datetime import date, datetime, timedelta
import pytest
from sqlalchemy import func

from kardex.extensions import db
from kardex.models.stock import Movement, MovementType, LocationStock, partition_key
from kardex.exceptions import (
    NotFound, ValidationError, InvalidState, Conflict,
    InsufficientStock, InsufficientLocationStock,
)
from kardex.services.inventory_service import InventoryService
from kardex.utils.tenancy import tenant_transaction
from conftest import TENANT, OTHER_TENANT


def _ledger_sum(product_id):
    return db.session.query(func.coalesce(func.sum(Movement.cantidad), 0)) \
        .filter(Movement.producto_id == product_id).scalar()


def test_entry_writes_movement_and_updates_stock(make_product):
    product = make_product(stock=0, costo=12.5)

    movement = InventoryService.apply_movement(TENANT, product.id, MovementType.ENTRADA_COMPRA, 10,
                                               reference='OC-1')

    assert product.stock_actual == 10
    assert movement.cantidad == 10
    assert movement.stock_antes == 0
    assert movement.stock_despues == 10
    assert movement.tipo is MovementType.ENTRADA_COMPRA
    assert movement.costo_unitario == 12.5
    assert movement.valor_total == 125.0
    assert movement.periodo == partition_key()


def test_exit_is_stored_with_negative_sign(make_product):
    product = make_product(stock=10)

    movement = InventoryService.apply_movement(TENANT, product.id, 'salida_merma', 3, reason='rota')

    assert movement.cantidad == -3
    assert (movement.stock_antes, movement.stock_despues) == (10, 7)
    assert product.stock_actual == 7


def test_exit_beyond_stock_is_rejected_without_side_effects(make_product):
    product = make_product(stock=5)

    with pytest.raises(InsufficientStock) as exc:
        InventoryService.apply_movement(TENANT, product.id, MovementType.SALIDA_VENTA, 6)

    assert exc.value.payload['stock_actual'] == 5
    assert product.stock_actual == 5
    assert Movement.query.filter_by(producto_id=product.id).count() == 1


@pytest.mark.parametrize('quantity', [0, -2, 1.5, True, '3'])
def test_quantity_must_be_positive_integer(make_product, quantity):
    product = make_product(stock=5)
    with pytest.raises(ValidationError):
        InventoryService.apply_movement(TENANT, product.id, MovementType.ENTRADA_AJUSTE, quantity)


def test_unknown_movement_type(make_product):
    product = make_product()
    with pytest.raises(ValidationError):
        InventoryService.apply_movement(TENANT, product.id, 'entrada_magica', 1)


def test_inactive_product_cannot_move(make_product):
    product = make_product(activo=False)
    with pytest.raises(ValidationError):
        InventoryService.apply_movement(TENANT, product.id, MovementType.SALIDA_VENTA, 1)


def test_product_of_another_tenant_is_not_visible(make_product):
    product = make_product(stock=5, tenant_id=OTHER_TENANT)
    with pytest.raises(NotFound):
        InventoryService.apply_movement(TENANT, product.id, MovementType.SALIDA_VENTA, 1)


def test_stock_equals_sum_of_ledger(make_product):
    product = make_product(stock=20)
    InventoryService.apply_movement(TENANT, product.id, MovementType.SALIDA_VENTA, 4)
    InventoryService.apply_movement(TENANT, product.id, MovementType.ENTRADA_DEVOLUCION, 1)
    InventoryService.apply_movement(TENANT, product.id, MovementType.SALIDA_ROBO, 2)
    with pytest.raises(InsufficientStock):
        InventoryService.apply_movement(TENANT, product.id, MovementType.SALIDA_VENTA, 100)

    assert product.stock_actual == 15
    assert _ledger_sum(product.id) == 15
    assert InventoryService.reconcile(TENANT) == []


def test_variant_movement_updates_variant_and_product(make_product, make_variant):
    product = make_product()
    red = make_variant(product, 'CAM-ROJA', stock=4)
    blue = make_variant(product, 'CAM-AZUL', stock=6)

    InventoryService.apply_movement(TENANT, product.id, MovementType.SALIDA_VENTA, 3, variant_id=blue.id)

    assert product.stock_actual == 7
    assert (red.stock_actual, blue.stock_actual) == (4, 3)
    with pytest.raises(InsufficientStock):
        InventoryService.apply_movement(TENANT, product.id, MovementType.SALIDA_VENTA, 5, variant_id=red.id)


def test_movement_rows_are_immutable(make_product):
    product = make_product(stock=3)
    movement = Movement.query.filter_by(producto_id=product.id).one()

    movement.motivo = 'editado'
    with pytest.raises(InvalidState):
        db.session.flush()
    db.session.rollback()

    db.session.delete(movement)
    with pytest.raises(InvalidState):
        db.session.flush()
    db.session.rollback()


def test_located_entry_and_fefo_exit(make_product, make_location):
    location = make_location(capacidad_maxima=100)
    product = make_product()
    soon = date.today() + timedelta(days=10)
    late = date.today() + timedelta(days=90)
    InventoryService.apply_movement(TENANT, product.id, MovementType.ENTRADA_COMPRA, 5,
                                    location_id=location.id, lot='L-LATE', expiry=late)
    InventoryService.apply_movement(TENANT, product.id, MovementType.ENTRADA_COMPRA, 4,
                                    location_id=location.id, lot='L-SOON', expiry=soon)
    assert location.capacidad_ocupada == 9

    InventoryService.apply_movement(TENANT, product.id, MovementType.SALIDA_VENTA, 6, location_id=location.id)

    rows = {r.lote: r.cantidad for r in LocationStock.query.filter_by(producto_id=product.id)}
    assert rows == {'L-SOON': 0, 'L-LATE': 3}
    assert location.capacidad_ocupada == 3
    assert product.stock_actual == 3


def test_located_exit_needs_stock_at_that_location(make_product, make_location):
    location = make_location()
    product = make_product(stock=10)

    with pytest.raises(InsufficientLocationStock):
        InventoryService.apply_movement(TENANT, product.id, MovementType.SALIDA_VENTA, 1, location_id=location.id)
    assert product.stock_actual == 10


def test_entry_rejected_when_location_is_full(make_product, make_location):
    location = make_location(capacidad_maxima=5)
    product = make_product()
    with pytest.raises(ValidationError):
        InventoryService.apply_movement(TENANT, product.id, MovementType.ENTRADA_COMPRA, 6, location_id=location.id)
    assert product.stock_actual == 0


def test_blocked_location_rejects_movements(make_product, make_location):
    location = make_location(bloqueada=True)
    product = make_product()
    with pytest.raises(InvalidState):
        InventoryService.apply_movement(TENANT, product.id, MovementType.ENTRADA_COMPRA, 1, location_id=location.id)


def test_unlocated_exit_drains_located_surplus(make_product, make_location):
    picking = make_location(es_picking=True)
    reserve = make_location()
    product = make_product()
    InventoryService.apply_movement(TENANT, product.id, MovementType.ENTRADA_COMPRA, 6, location_id=reserve.id)
    InventoryService.apply_movement(TENANT, product.id, MovementType.ENTRADA_COMPRA, 4, location_id=picking.id)

    InventoryService.apply_movement(TENANT, product.id, MovementType.SALIDA_VENTA, 5)

    located = {r.ubicacion_id: r.cantidad for r in LocationStock.query.filter_by(producto_id=product.id)}
    assert located == {picking.id: 0, reserve.id: 5}
    assert sum(located.values()) <= product.stock_actual


def test_register_movement_maps_fields(make_product, make_supplier):
    supplier = make_supplier()
    product = make_product()

    movement = InventoryService.register_movement(TENANT, {
        'producto_id': product.id,
        'tipo_movimiento': 'entrada_compra',
        'cantidad': '8',
        'proveedor_id': supplier.id,
        'costo_unitario': 3.0,
        'referencia': 'FAC-77',
        'motivo': 'compra directa',
    })

    assert movement.cantidad == 8
    assert movement.proveedor_id == supplier.id
    assert movement.referencia == 'FAC-77'
    assert movement.valor_total == 24.0


def test_register_movement_requires_fields(make_product):
    product = make_product()
    with pytest.raises(ValidationError):
        InventoryService.register_movement(TENANT, {'producto_id': product.id, 'cantidad': 1})
    with pytest.raises(ValidationError):
        InventoryService.register_movement(TENANT, {'producto_id': product.id, 'tipo_movimiento': 'entrada_compra',
                                                    'cantidad': 'diez'})


def test_kardex_history_and_movement_totals(make_product):
    product = make_product(stock=10, costo=2.0)
    InventoryService.apply_movement(TENANT, product.id, MovementType.SALIDA_VENTA, 3)
    InventoryService.apply_movement(TENANT, product.id, MovementType.SALIDA_MERMA, 1)

    history = InventoryService.get_kardex(TENANT, product.id)
    assert history['total'] == 3
    assert [m.cantidad for m in history['movimientos']] == [-1, -3, 10]

    listing = InventoryService.list_movements(TENANT, category='salida')
    assert listing['totales']['total_movimientos'] == 2
    assert listing['totales']['total_salidas'] == 4
    assert listing['totales']['total_entradas'] == 0

    only_sales = InventoryService.get_kardex(TENANT, product.id, movement_type='salida_venta')
    assert only_sales['total'] == 1


def test_stats_group_by_direction(make_product):
    product = make_product(stock=10)
    InventoryService.apply_movement(TENANT, product.id, MovementType.SALIDA_VENTA, 4)
    today = datetime.utcnow().date()

    stats = InventoryService.get_stats(TENANT, today, today)

    assert stats['resumen']['entradas']['total_unidades'] == 10
    assert stats['resumen']['salidas']['total_unidades'] == 4
    assert {row['tipo_movimiento'] for row in stats['por_tipo']} == {'entrada_compra', 'salida_venta'}


def test_reconcile_detects_and_fixes_cache_drift(make_product):
    product = make_product(stock=7)
    product.stock_actual = 99
    db.session.commit()

    found = InventoryService.reconcile(TENANT)
    assert found == [{'producto_id': product.id, 'variante_id': None, 'stock_actual': 99, 'stock_kardex': 7}]
    assert product.stock_actual == 99

    InventoryService.reconcile(TENANT, fix=True)
    assert product.stock_actual == 7
    assert InventoryService.reconcile(TENANT) == []


def test_nested_transaction_joins_outer_scope(make_product):
    product = make_product(stock=5)

    with pytest.raises(InsufficientStock):
        with tenant_transaction(TENANT):
            InventoryService.apply_movement(TENANT, product.id, MovementType.SALIDA_VENTA, 2)
            InventoryService.apply_movement(TENANT, product.id, MovementType.SALIDA_VENTA, 4)

    assert product.stock_actual == 5
    assert Movement.query.filter_by(producto_id=product.id).count() == 1


def test_transaction_cannot_switch_tenant(app):
    with tenant_transaction(TENANT):
        with pytest.raises(Conflict):
            with tenant_transaction(OTHER_TENANT):
                pass
