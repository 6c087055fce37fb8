import pytest

from kardex.models.stock import Movement, MovementType, LocationStock
from kardex.models.stocktake import StockTake, StockTakeItem
from kardex.exceptions import ValidationError, InvalidState, PendingItems
from kardex.services.inventory_service import InventoryService
from kardex.services.stocktake_service import StockTakeService
from conftest import TENANT


def _count_all(stocktake, counts):
    """counts: {producto_id: cantidad}；未列出的按系统数量录入"""
    for item in stocktake.items:
        StockTakeService.input_count(TENANT, item.id, counts.get(item.producto_id, item.cantidad_sistema))


def test_shortage_produces_single_negative_adjustment(make_product):
    product = make_product(stock=50, costo=4.0)
    stocktake = StockTakeService.create_stocktake(TENANT, nombre='Cierre mensual')
    assert stocktake.folio.startswith('CNT-')
    StockTakeService.start(TENANT, stocktake.id)

    item = stocktake.items[0]
    assert item.cantidad_sistema == 50
    StockTakeService.input_count(TENANT, item.id, 47)
    assert item.diferencia == -3
    assert item.valor_diferencia == -12.0
    assert item.tipo_diferencia == 'faltante'

    StockTakeService.complete(TENANT, stocktake.id)
    result = StockTakeService.apply_adjustments(TENANT, stocktake.id, user_id=5)

    assert stocktake.estado == StockTake.STATUS_ADJUSTED
    assert len(result['ajustes_realizados']) == 1
    adjustments = Movement.query.filter_by(conteo_id=stocktake.id).all()
    assert len(adjustments) == 1
    assert adjustments[0].tipo is MovementType.SALIDA_AJUSTE
    assert adjustments[0].cantidad == -3
    assert adjustments[0].usuario_id == 5
    assert product.stock_actual == 47
    assert item.estado == StockTakeItem.STATUS_ADJUSTED
    assert item.movimiento_id == adjustments[0].id


def test_zero_differences_produce_no_movements(make_product):
    a = make_product(stock=5)
    make_product(stock=8)
    stocktake = StockTakeService.create_stocktake(TENANT)
    StockTakeService.start(TENANT, stocktake.id)
    _count_all(stocktake, {})

    StockTakeService.complete(TENANT, stocktake.id)
    result = StockTakeService.apply_adjustments(TENANT, stocktake.id)

    assert result['ajustes_realizados'] == []
    assert Movement.query.filter_by(conteo_id=stocktake.id).count() == 0
    assert stocktake.estado == StockTake.STATUS_ADJUSTED
    assert a.stock_actual == 5


def test_surplus_uses_entry_adjustment(make_product):
    product = make_product(stock=10)
    stocktake = StockTakeService.create_stocktake(TENANT)
    StockTakeService.start(TENANT, stocktake.id)
    _count_all(stocktake, {product.id: 12})
    StockTakeService.complete(TENANT, stocktake.id)

    StockTakeService.apply_adjustments(TENANT, stocktake.id)

    movement = Movement.query.filter_by(conteo_id=stocktake.id).one()
    assert movement.tipo is MovementType.ENTRADA_AJUSTE
    assert product.stock_actual == 12


def test_adjustment_is_relative_to_snapshot(make_product):
    product = make_product(stock=20)
    stocktake = StockTakeService.create_stocktake(TENANT)
    StockTakeService.start(TENANT, stocktake.id)
    # 盘点期间发生销售
    InventoryService.apply_movement(TENANT, product.id, MovementType.SALIDA_VENTA, 5)
    _count_all(stocktake, {product.id: 18})
    StockTakeService.complete(TENANT, stocktake.id)

    StockTakeService.apply_adjustments(TENANT, stocktake.id)

    assert product.stock_actual == 13


def test_complete_with_pending_items(make_product):
    make_product(stock=1)
    make_product(stock=2)
    stocktake = StockTakeService.create_stocktake(TENANT)
    StockTakeService.start(TENANT, stocktake.id)
    StockTakeService.input_count(TENANT, stocktake.items[0].id, 1)

    with pytest.raises(PendingItems) as exc:
        StockTakeService.complete(TENANT, stocktake.id)

    assert exc.value.payload['pendientes'] == 1
    assert stocktake.estado == StockTake.STATUS_IN_PROGRESS
    assert stocktake.progreso == 50.0


def test_lifecycle_guards(make_product):
    make_product(stock=1)
    stocktake = StockTakeService.create_stocktake(TENANT)

    with pytest.raises(InvalidState):
        StockTakeService.complete(TENANT, stocktake.id)
    with pytest.raises(InvalidState):
        StockTakeService.apply_adjustments(TENANT, stocktake.id)

    StockTakeService.start(TENANT, stocktake.id)
    with pytest.raises(InvalidState):
        StockTakeService.start(TENANT, stocktake.id)
    with pytest.raises(ValidationError):
        StockTakeService.input_count(TENANT, stocktake.items[0].id, -1)

    StockTakeService.cancel(TENANT, stocktake.id, reason='inventario de prueba')
    assert stocktake.estado == StockTake.STATUS_CANCELLED
    with pytest.raises(InvalidState):
        StockTakeService.input_count(TENANT, stocktake.items[0].id, 1)


def test_unknown_count_type(app):
    with pytest.raises(ValidationError):
        StockTakeService.create_stocktake(TENANT, tipo_conteo='semanal')


def test_cycle_count_needs_product_list(make_product):
    make_product(stock=1)
    chosen = make_product(stock=3)
    empty = StockTakeService.create_stocktake(TENANT, tipo_conteo=StockTake.TYPE_CYCLE)
    with pytest.raises(ValidationError):
        StockTakeService.start(TENANT, empty.id)

    cycle = StockTakeService.create_stocktake(TENANT, tipo_conteo=StockTake.TYPE_CYCLE,
                                              filtros={'producto_ids': [chosen.id]})
    StockTakeService.start(TENANT, cycle.id)
    assert [i.producto_id for i in cycle.items] == [chosen.id]


def test_category_count(make_product, make_category):
    ferreteria = make_category('Ferretería')
    pinturas = make_category('Pinturas')
    tornillo = make_product(stock=10, categoria_id=ferreteria.id)
    make_product(stock=10, categoria_id=pinturas.id)

    stocktake = StockTakeService.create_stocktake(TENANT, tipo_conteo=StockTake.TYPE_CATEGORY,
                                                  filtros={'categoria_ids': [ferreteria.id]})
    StockTakeService.start(TENANT, stocktake.id)

    assert [i.producto_id for i in stocktake.items] == [tornillo.id]


def test_random_count_uses_configured_sample(app, make_product):
    for _ in range(5):
        make_product(stock=1)
    stocktake = StockTakeService.create_stocktake(TENANT, tipo_conteo=StockTake.TYPE_RANDOM)
    StockTakeService.start(TENANT, stocktake.id)
    assert stocktake.total_items == app.config['COUNT_RANDOM_SAMPLE']

    sized = StockTakeService.create_stocktake(TENANT, tipo_conteo=StockTake.TYPE_RANDOM,
                                              filtros={'cantidad_muestra': 2})
    StockTakeService.start(TENANT, sized.id)
    assert sized.total_items == 2


def test_only_with_stock_filter(make_product):
    make_product(stock=0)
    stocked = make_product(stock=4)
    stocktake = StockTakeService.create_stocktake(TENANT, filtros={'solo_con_stock': True})
    StockTakeService.start(TENANT, stocktake.id)
    assert [i.producto_id for i in stocktake.items] == [stocked.id]


def test_products_with_variants_are_counted_per_variant(make_product, make_variant):
    product = make_product()
    red = make_variant(product, 'CAM-R', stock=3)
    blue = make_variant(product, 'CAM-A', stock=5)
    stocktake = StockTakeService.create_stocktake(TENANT)
    StockTakeService.start(TENANT, stocktake.id)

    by_variant = {i.variante_id: i for i in stocktake.items}
    assert set(by_variant) == {red.id, blue.id}
    StockTakeService.input_count(TENANT, by_variant[red.id].id, 1)
    StockTakeService.input_count(TENANT, by_variant[blue.id].id, 5)
    StockTakeService.complete(TENANT, stocktake.id)
    StockTakeService.apply_adjustments(TENANT, stocktake.id)

    assert (red.stock_actual, blue.stock_actual, product.stock_actual) == (1, 5, 6)


def test_location_count_adjusts_that_location(make_product, make_location):
    shelf = make_location()
    other = make_location()
    product = make_product(stock=10, location_id=shelf.id)
    InventoryService.apply_movement(TENANT, product.id, MovementType.ENTRADA_COMPRA, 4, location_id=other.id)

    stocktake = StockTakeService.create_stocktake(TENANT, tipo_conteo=StockTake.TYPE_LOCATION,
                                                  filtros={'ubicacion_ids': [shelf.id]})
    StockTakeService.start(TENANT, stocktake.id)
    item = stocktake.items[0]
    assert (item.ubicacion_id, item.cantidad_sistema) == (shelf.id, 10)

    StockTakeService.input_count(TENANT, item.id, 8)
    StockTakeService.complete(TENANT, stocktake.id)
    StockTakeService.apply_adjustments(TENANT, stocktake.id)

    located = {r.ubicacion_id: r.cantidad for r in LocationStock.query.filter_by(producto_id=product.id)}
    assert located == {shelf.id: 8, other.id: 4}
    assert product.stock_actual == 12


def test_find_item_by_code_and_summary(make_product):
    product = make_product(sku='LIJ-100', stock=6, costo=3.0, codigo_barras='7501000000011')
    make_product(stock=2)
    stocktake = StockTakeService.create_stocktake(TENANT)
    StockTakeService.start(TENANT, stocktake.id)

    item = StockTakeService.find_item_by_code(TENANT, stocktake.id, '7501000000011')
    assert item.producto_id == product.id
    assert StockTakeService.find_item_by_code(TENANT, stocktake.id, 'NO-EXISTE') is None

    StockTakeService.input_count(TENANT, item.id, 4)
    summary = StockTakeService.get_summary(TENANT, stocktake.id)

    assert summary['pendientes'] == 1
    assert summary['faltantes'] == 1
    assert summary['unidades_faltantes'] == 2
    assert summary['valor_faltantes'] == 6.0
    assert summary['progreso'] == 50.0


def test_cannot_cancel_adjusted_count(make_product):
    make_product(stock=1)
    stocktake = StockTakeService.create_stocktake(TENANT)
    StockTakeService.start(TENANT, stocktake.id)
    _count_all(stocktake, {})
    StockTakeService.complete(TENANT, stocktake.id)
    StockTakeService.apply_adjustments(TENANT, stocktake.id)

    with pytest.raises(InvalidState):
        StockTakeService.cancel(TENANT, stocktake.id)
