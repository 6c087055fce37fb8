import pytest

from kardex.models.stock import Movement, MovementType, Location, LocationStock
from kardex.exceptions import ValidationError, InvalidState, InsufficientStock, InsufficientLocationStock
from kardex.services.inventory_service import InventoryService
from kardex.services.location_service import LocationService
from conftest import TENANT, OTHER_TENANT, SUCURSAL


@pytest.fixture
def warehouse(make_location):
    zone = make_location('Z1', Location.TYPE_ZONE)
    aisle = make_location('Z1-P1', Location.TYPE_AISLE, parent=zone)
    shelf = make_location('Z1-P1-E1', Location.TYPE_SHELF, parent=aisle)
    bin_a = make_location('Z1-P1-E1-A', Location.TYPE_BIN, parent=shelf, capacidad_maxima=50)
    bin_b = make_location('Z1-P1-E1-B', Location.TYPE_BIN, parent=shelf, capacidad_maxima=10)
    return zone, aisle, shelf, bin_a, bin_b


def test_hierarchy_must_go_deeper(warehouse, make_location):
    zone, aisle, shelf, bin_a, _ = warehouse
    with pytest.raises(ValidationError):
        make_location('MAL-1', Location.TYPE_ZONE, parent=aisle)
    with pytest.raises(ValidationError):
        make_location('MAL-2', Location.TYPE_SHELF, parent=bin_a)
    with pytest.raises(ValidationError):
        make_location('MAL-3', Location.TYPE_BIN, parent=zone, sucursal_id=SUCURSAL + 1)
    # 跳层是允许的
    assert make_location('Z1-BIN', Location.TYPE_BIN, parent=zone).parent_id == zone.id


def test_location_validation(warehouse, make_location):
    with pytest.raises(ValidationError):
        make_location('Z1', Location.TYPE_ZONE)
    with pytest.raises(ValidationError):
        make_location('X', 'rack')
    with pytest.raises(ValidationError):
        LocationService.create_location(TENANT, {'codigo': 'SIN-SUC', 'tipo': 'bin'})


def test_tree_and_navigation(warehouse):
    zone, aisle, shelf, bin_a, bin_b = warehouse

    tree = LocationService.get_tree(TENANT, SUCURSAL)
    assert [n['codigo'] for n in tree] == ['Z1']
    assert [n['codigo'] for n in tree[0]['hijos'][0]['hijos'][0]['hijos']] == ['Z1-P1-E1-A', 'Z1-P1-E1-B']

    assert [loc.id for loc in LocationService.get_ancestors(TENANT, bin_b.id)] == [zone.id, aisle.id, shelf.id]
    assert {loc.id for loc in LocationService.get_descendants(TENANT, aisle.id)} == {shelf.id, bin_a.id, bin_b.id}
    assert [loc.codigo for loc in LocationService.list_locations(TENANT, tipo='bin')] == \
        ['Z1-P1-E1-A', 'Z1-P1-E1-B']
    assert len(LocationService.list_locations(TENANT, search='E1')) == 3


def test_update_rejects_self_parent_and_small_capacity(warehouse, make_product):
    _, _, shelf, bin_a, _ = warehouse
    product = make_product()
    InventoryService.apply_movement(TENANT, product.id, MovementType.ENTRADA_COMPRA, 20, location_id=bin_a.id)

    with pytest.raises(ValidationError):
        LocationService.update_location(TENANT, shelf.id, {'parent_id': shelf.id})
    with pytest.raises(ValidationError):
        LocationService.update_location(TENANT, bin_a.id, {'capacidad_maxima': 10})

    LocationService.update_location(TENANT, bin_a.id, {'nombre': 'Bin A', 'es_picking': True})
    assert bin_a.nombre == 'Bin A'
    assert bin_a.es_picking is True


def test_add_stock_places_unlocated_units(warehouse, make_product):
    _, _, _, bin_a, bin_b = warehouse
    product = make_product(stock=12)

    LocationService.add_stock(TENANT, bin_a.id, product.id, 8, lot='L1')

    assert bin_a.capacidad_ocupada == 8
    assert product.stock_actual == 12
    with pytest.raises(InsufficientStock):
        LocationService.add_stock(TENANT, bin_b.id, product.id, 5)
    with pytest.raises(ValidationError):
        LocationService.add_stock(TENANT, bin_b.id, product.id, 0)
    assert Movement.query.filter_by(producto_id=product.id).count() == 1


def test_move_stock_without_ledger(warehouse, make_product):
    _, _, _, bin_a, bin_b = warehouse
    product = make_product(stock=30, location_id=bin_a.id)

    LocationService.move_stock(TENANT, product.id, bin_a.id, bin_b.id, 6)

    stock = {s.ubicacion_id: s.cantidad for s in LocationStock.query.filter_by(producto_id=product.id)}
    assert stock == {bin_a.id: 24, bin_b.id: 6}
    assert (bin_a.capacidad_ocupada, bin_b.capacidad_ocupada) == (24, 6)
    assert Movement.query.filter_by(producto_id=product.id).count() == 1
    assert product.stock_actual == 30


def test_move_stock_checks_source_and_capacity(warehouse, make_product):
    _, _, _, bin_a, bin_b = warehouse
    product = make_product(stock=30, location_id=bin_a.id)

    with pytest.raises(InsufficientLocationStock):
        LocationService.move_stock(TENANT, product.id, bin_b.id, bin_a.id, 1)
    with pytest.raises(ValidationError):
        LocationService.move_stock(TENANT, product.id, bin_a.id, bin_b.id, 11)
    with pytest.raises(ValidationError):
        LocationService.move_stock(TENANT, product.id, bin_a.id, bin_a.id, 1)


def test_audited_move_writes_transfer_pair(warehouse, make_product):
    _, _, _, bin_a, bin_b = warehouse
    product = make_product(stock=30, location_id=bin_a.id, costo=7.0)

    LocationService.move_stock(TENANT, product.id, bin_a.id, bin_b.id, 5, audit=True, user_id=2)

    transfers = (Movement.query.filter(Movement.producto_id == product.id,
                                       Movement.tipo_movimiento.like('%transferencia'))
                 .order_by(Movement.id).all())
    assert [(m.tipo_movimiento, m.cantidad) for m in transfers] == [
        ('salida_transferencia', -5), ('entrada_transferencia', 5)]
    assert product.stock_actual == 30
    assert {s.ubicacion_id: s.cantidad for s in LocationStock.query.filter_by(producto_id=product.id)} == \
        {bin_a.id: 25, bin_b.id: 5}


def test_delete_location_rules(warehouse, make_product):
    _, _, shelf, bin_a, bin_b = warehouse
    product = make_product(stock=3, location_id=bin_a.id)

    with pytest.raises(InvalidState):
        LocationService.delete_location(TENANT, shelf.id)
    with pytest.raises(InvalidState):
        LocationService.delete_location(TENANT, bin_a.id)

    LocationService.delete_location(TENANT, bin_b.id)
    assert Location.query.filter_by(codigo='Z1-P1-E1-B').count() == 0

    InventoryService.apply_movement(TENANT, product.id, MovementType.SALIDA_VENTA, 3, location_id=bin_a.id)
    LocationService.delete_location(TENANT, bin_a.id)
    assert LocationStock.query.count() == 0


def test_available_locations_and_stats(warehouse, make_product):
    zone, aisle, shelf, bin_a, bin_b = warehouse
    product = make_product(stock=45, location_id=bin_a.id)
    LocationService.update_location(TENANT, shelf.id, {'bloqueada': True})

    fits = LocationService.available_locations(TENANT, SUCURSAL, 6)
    assert [loc.id for loc in fits] == [zone.id, aisle.id, bin_b.id]

    assert [s.producto_id for s in LocationService.get_location_stock(TENANT, bin_a.id)] == [product.id]
    assert [s.ubicacion_id for s in LocationService.get_product_locations(TENANT, product.id)] == [bin_a.id]

    stats = LocationService.get_stats(TENANT, SUCURSAL)
    assert stats['total_ubicaciones'] == 5
    assert stats['por_tipo'] == {'zona': 1, 'pasillo': 1, 'estante': 1, 'bin': 2}
    assert stats['bloqueadas'] == 1
    assert (stats['capacidad_total'], stats['capacidad_ocupada']) == (60, 45)
    assert stats['ocupacion_porcentaje'] == 75.0


def test_location_codes_are_scoped_per_tenant(make_location):
    ours = make_location('A-01')
    theirs = make_location('A-01', tenant_id=OTHER_TENANT)

    assert (ours.organizacion_id, theirs.organizacion_id) == (TENANT, OTHER_TENANT)
    assert ours.sucursal_id == theirs.sucursal_id
    assert [loc.id for loc in LocationService.list_locations(OTHER_TENANT)] == [theirs.id]
    with pytest.raises(ValidationError):
        make_location('A-01', tenant_id=OTHER_TENANT)
