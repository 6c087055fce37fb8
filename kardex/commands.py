import click
import random
from flask.cli import with_appcontext
from sqlalchemy.exc import SQLAlchemyError
from kardex.extensions import db
from kardex.models.biz import Category, Supplier, Product
from kardex.models.stock import Movement, Location, LocationStock
from kardex.models.reservation import Reservation
from kardex.models.purchase import PurchaseOrder
from kardex.models.stocktake import StockTake
from kardex.models.adjustment import BulkAdjustment
from kardex.services.location_service import LocationService
from kardex.services.purchase_service import PurchaseService
from kardex.services.reservation_service import ReservationService
from kardex.services.inventory_service import InventoryService
from kardex.utils.fake_gen import fake, KardexProvider

@click.command('status')
@with_appcontext
def status():
    """
    [验证指令] 查看当前数据库中的数据统计。
    """
    click.echo(click.style('📊 KARDEX 数据库状态:', fg='cyan', bold=True))

    try:
        counts = [
            ('商品 (Productos)', Product.query.count()),
            ('货位 (Ubicaciones)', Location.query.count()),
            ('流水 (Movimientos)', Movement.query.count()),
            ('有效预留 (Reservas)', Reservation.query.filter_by(estado=Reservation.STATUS_ACTIVE).count()),
            ('采购单 (Órdenes)', PurchaseOrder.query.count()),
            ('盘点 (Conteos)', StockTake.query.count()),
            ('批量调整 (Ajustes)', BulkAdjustment.query.count()),
        ]
    except SQLAlchemyError as e:
        click.echo(click.style(f'✘ 数据库读取失败: {e}', fg='red'))
        click.echo("请检查是否执行了 'flask db upgrade'")
        raise SystemExit(1)

    for label, count in counts:
        click.echo(f" - {label}: \t{count}")
    if counts[0][1] > 0:
        click.echo(click.style('✔ 数据库连接正常，数据已存在。', fg='green'))
    else:
        click.echo(click.style('⚠ 数据库为空，请运行 flask forge 生成数据。', fg='yellow'))


@click.command('forge')
@click.option('--tenant', default=1, help='演示租户 (organizacion_id)')
@click.option('--products', 'product_count', default=40, help='商品数量')
@click.option('--sucursal', default=1, help='门店 (sucursal_id)')
@with_appcontext
def forge(tenant, product_count, sucursal):
    """
    [演示数据] 重建数据库并生成一个演示租户。
    库存通过采购收货写入流水，保证 stock_actual 与 kardex 一致。
    警告：这将清除数据库中的现有数据！
    """
    click.echo(click.style(f'⚡ 生成演示租户 {tenant} ...', fg='cyan', bold=True))

    db.drop_all()
    db.create_all()

    click.echo('正在注册分类、供应商和商品...')
    products = init_catalog(tenant, product_count)

    click.echo('正在建设货位...')
    bins = init_locations(tenant, sucursal)

    click.echo('正在通过采购收货初始化库存...')
    received = init_stock(tenant, products, bins)

    click.echo('正在生成购物车预留...')
    reserved = init_reservations(tenant, products)

    click.echo(click.style('✔ 演示数据构建完成！', fg='green', bold=True))
    click.echo(f"数据统计: {len(products)} 商品, {len(bins)} 货位, {received} 收货行, {reserved} 预留")


def init_catalog(tenant, product_count):
    categories = []
    for name in KardexProvider.categories:
        category = Category(organizacion_id=tenant, nombre=name)
        db.session.add(category)
        categories.append(category)

    suppliers = []
    for _ in range(5):
        supplier = Supplier(
            organizacion_id=tenant,
            nombre=fake.supplier_name(),
            rfc=fake.bothify('???######???').upper(),
            email=fake.company_email(),
            telefono=fake.phone_number(),
            dias_credito=random.choice([0, 15, 30]),
        )
        db.session.add(supplier)
        suppliers.append(supplier)

    products = []
    for i in range(product_count):
        cost = round(random.uniform(5, 500), 2)
        product = Product(
            organizacion_id=tenant,
            sku=fake.product_sku(i),
            codigo_barras=fake.unique.ean13(),
            nombre=fake.product_name(),
            costo_unitario=cost,
            precio_venta=round(cost * random.uniform(1.2, 1.8), 2),
            stock_actual=0,
            stock_minimo=random.choice([0, 5, 10]),
            stock_maximo=random.choice([0, 100, 200]),
            categoria=random.choice(categories),
            proveedor=random.choice(suppliers),
        )
        db.session.add(product)
        products.append(product)
    db.session.commit()
    click.echo(f'  ✓ 已创建 {len(products)} 个商品')
    return products


def init_locations(tenant, sucursal):
    """一个区、两条通道、每条通道两个货架、每个货架两个货位"""
    zone = LocationService.create_location(tenant, {
        'sucursal_id': sucursal, 'codigo': 'A', 'tipo': Location.TYPE_ZONE, 'nombre': 'Almacén general',
    })
    bins = []
    for aisle_no in (1, 2):
        aisle = LocationService.create_location(tenant, {
            'sucursal_id': sucursal, 'codigo': f'A-{aisle_no:02d}', 'tipo': Location.TYPE_AISLE,
            'parent_id': zone.id,
        })
        for shelf_no in (1, 2):
            shelf = LocationService.create_location(tenant, {
                'sucursal_id': sucursal, 'codigo': f'{aisle.codigo}-{shelf_no}', 'tipo': Location.TYPE_SHELF,
                'parent_id': aisle.id,
            })
            for bin_no in (1, 2):
                bins.append(LocationService.create_location(tenant, {
                    'sucursal_id': sucursal, 'codigo': f'{shelf.codigo}-{bin_no}', 'tipo': Location.TYPE_BIN,
                    'parent_id': shelf.id, 'capacidad_maxima': 2000,
                    'es_picking': aisle_no == 1,
                }))
    click.echo(f'  ✓ 已创建 {len(bins)} 个货位')
    return bins


def init_stock(tenant, products, bins):
    """每个供应商一张采购单，发送后全部收货入随机货位"""
    by_supplier = {}
    for product in products:
        by_supplier.setdefault(product.proveedor_id, []).append(product)

    lines = 0
    for supplier_id, items in by_supplier.items():
        order = PurchaseService.create_order(tenant, {
            'proveedor_id': supplier_id,
            'items': [{'producto_id': p.id, 'cantidad_ordenada': random.randint(20, 150),
                       'precio_unitario': p.costo_unitario} for p in items],
        })
        PurchaseService.submit(tenant, order.id)
        receipts = [{'item_id': item.id, 'cantidad': item.cantidad_ordenada,
                     'ubicacion_id': random.choice(bins).id} for item in order.items]
        result = PurchaseService.receive_items(tenant, order.id, receipts)
        lines += len(result['recibidos'])
    click.echo(f'  ✓ 已收货 {lines} 行')
    return lines


def init_reservations(tenant, products):
    count = 0
    for product in random.sample(products, k=min(5, len(products))):
        ReservationService.reserve(tenant, product.id, random.randint(1, 5), 'carrito', fake.random_int(1, 9999))
        count += 1
    return count


@click.command('expire-reservations')
@click.option('--tenant', type=int, default=None, help='只处理指定租户')
@with_appcontext
def expire_reservations(tenant):
    """把已过期的有效预留标记为 expirada (可由 cron 定期执行)"""
    expired = ReservationService.expire_overdue(tenant)
    click.echo(click.style(f'✓ {expired} 个预留已过期', fg='green'))


@click.command('reconcile-stock')
@click.option('--tenant', type=int, default=None, help='只检查指定租户')
@click.option('--fix', is_flag=True, help='用流水合计修正 stock_actual')
@with_appcontext
def reconcile_stock(tenant, fix):
    """核对商品库存缓存与 kardex 流水合计"""
    if tenant is None:
        tenants = [row[0] for row in db.session.query(Product.organizacion_id).distinct().all()]
    else:
        tenants = [tenant]

    total = 0
    for tenant_id in tenants:
        for row in InventoryService.reconcile(tenant_id, fix=fix):
            total += 1
            target = f"variante {row['variante_id']}" if row['variante_id'] else f"producto {row['producto_id']}"
            click.echo(f" - org={tenant_id} {target}: stock_actual={row['stock_actual']} "
                       f"kardex={row['stock_kardex']}")

    located = (db.session.query(LocationStock.organizacion_id).filter(LocationStock.cantidad < 0).count())
    if located:
        click.echo(click.style(f'⚠ {located} 个货位库存为负', fg='yellow'))
    if total == 0:
        click.echo(click.style('✔ 库存缓存与流水一致。', fg='green'))
    elif fix:
        click.echo(click.style(f'✔ 已修正 {total} 处不一致。', fg='green'))
    else:
        click.echo(click.style(f'⚠ 发现 {total} 处不一致，使用 --fix 修正。', fg='yellow'))
