"""库存流水 (kardex) 服务：所有库存变动的唯一入口"""
from datetime import datetime, date, time
from flask import current_app
from sqlalchemy import func, case
from sqlalchemy.exc import IntegrityError
from kardex.extensions import db
from kardex.models.biz import Product, ProductVariant
from kardex.models.stock import Movement, MovementType, Location, LocationStock, partition_key
from kardex.exceptions import (
    NotFound, ValidationError, InvalidState,
    InsufficientStock, InsufficientLocationStock,
)
from kardex.utils.tenancy import tenant_transaction, tenant_session, lock_row

# register_movement 接受的可选字段 -> apply_movement 关键字参数
_MOVEMENT_FIELDS = {
    'variante_id': 'variant_id',
    'ubicacion_id': 'location_id',
    'lote': 'lot',
    'fecha_vencimiento': 'expiry',
    'costo_unitario': 'unit_cost',
    'proveedor_id': 'supplier_id',
    'usuario_id': 'user_id',
    'referencia': 'reference',
    'motivo': 'reason',
    'venta_id': 'sale_id',
}


def lock_location_stock(tenant_id, location_id, product_id, lot=None, create=False, expiry=None):
    """
    加锁读取 (货位, 商品, 批次) 库存行
    create=True 时不存在则在 savepoint 中插入，唯一键冲突时重新读取。
    """
    row = lock_row(LocationStock, tenant_id, ubicacion_id=location_id, producto_id=product_id, lote=lot)
    if row is not None or not create:
        return row

    savepoint = db.session.begin_nested()
    try:
        row = LocationStock(organizacion_id=tenant_id, ubicacion_id=location_id, producto_id=product_id,
                            lote=lot, fecha_vencimiento=expiry, cantidad=0)
        db.session.add(row)
        db.session.flush()
        savepoint.commit()
    except IntegrityError:
        savepoint.rollback()
        row = lock_row(LocationStock, tenant_id, ubicacion_id=location_id, producto_id=product_id, lote=lot)
    return row


def located_quantity(tenant_id, product_id):
    """商品在所有货位上的库存合计"""
    total = (db.session.query(func.coalesce(func.sum(LocationStock.cantidad), 0))
             .filter(LocationStock.organizacion_id == tenant_id,
                     LocationStock.producto_id == product_id)
             .scalar())
    return int(total or 0)


def _movement_type(value):
    mtype = MovementType.parse(value)
    if mtype is None:
        raise ValidationError(f"Unknown movement type: {value}")
    return mtype


def _as_datetime(value, end_of_day=False):
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.max if end_of_day else time.min)
    raise ValidationError(f"Invalid date: {value!r}")


def _date_range(query, date_from=None, date_to=None):
    """按日期过滤，同时用 periodo 裁剪月分区"""
    date_from = _as_datetime(date_from)
    date_to = _as_datetime(date_to, end_of_day=True)
    if date_from:
        query = query.filter(Movement.periodo >= partition_key(date_from),
                             Movement.created_at >= date_from)
    if date_to:
        query = query.filter(Movement.periodo <= partition_key(date_to),
                             Movement.created_at <= date_to)
    return query


class InventoryService:

    @staticmethod
    def apply_movement(tenant_id, product_id, movement_type, quantity, *,
                       variant_id=None, location_id=None, lot=None, expiry=None, unit_cost=None,
                       supplier_id=None, user_id=None, reference=None, reason=None,
                       order_id=None, count_id=None, adjustment_id=None, reservation_id=None,
                       sale_id=None, allow_correction=False):
        """
        原子化库存变动
        :param quantity: 始终为正整数，方向由 movement_type 决定
        :param allow_correction: 调整类流水在库存已为负时允许正向修正
        :return: 写入的 Movement
        """
        mtype = _movement_type(movement_type)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Quantity must be a positive integer", payload={'cantidad': quantity})

        with tenant_transaction(tenant_id):
            # 1. 加锁读取最新数据
            product = lock_row(Product, tenant_id, id=product_id)
            if product is None:
                raise NotFound(f"Product {product_id} not found")
            if not product.activo:
                raise ValidationError(f"Product {product.sku or product.id} is inactive")

            variant = None
            if variant_id is not None:
                variant = lock_row(ProductVariant, tenant_id, id=variant_id)
                if variant is None or variant.producto_id != product.id:
                    raise NotFound(f"Variant {variant_id} not found for product {product.id}")

            location = None
            if location_id is not None:
                location = lock_row(Location, tenant_id, id=location_id)
                if location is None:
                    raise NotFound(f"Location {location_id} not found")
                if location.bloqueada or not location.activo:
                    raise InvalidState(f"Location {location.codigo} is blocked")

            # 2. 计算并校验结果
            delta = mtype.sign * quantity
            before = product.stock_actual or 0
            after = before + delta
            correcting = allow_correction and mtype.is_correction and delta > 0
            if after < 0 and not correcting:
                raise InsufficientStock(
                    f"Insufficient stock for {product.sku or product.id}: have {before}, need {quantity}",
                    payload={'producto_id': product.id, 'stock_actual': before, 'solicitado': quantity},
                )
            if variant is not None:
                variant_after = (variant.stock_actual or 0) + delta
                if variant_after < 0 and not correcting:
                    raise InsufficientStock(
                        f"Insufficient stock for variant {variant.sku or variant.id}",
                        payload={'variante_id': variant.id, 'stock_actual': variant.stock_actual,
                                 'solicitado': quantity},
                    )

            if unit_cost is None:
                unit_cost = variant.costo_efectivo if variant is not None else (product.costo_unitario or 0.0)

            # 3. 写流水
            movement = Movement(
                organizacion_id=tenant_id,
                periodo=partition_key(),
                producto_id=product.id,
                variante_id=variant.id if variant is not None else None,
                ubicacion_id=location.id if location is not None else None,
                tipo_movimiento=mtype.value,
                cantidad=delta,
                stock_antes=before,
                stock_despues=after,
                costo_unitario=unit_cost,
                valor_total=round(quantity * (unit_cost or 0), 2),
                lote=lot,
                fecha_vencimiento=expiry,
                proveedor_id=supplier_id,
                usuario_id=user_id,
                referencia=reference,
                motivo=reason,
                orden_compra_id=order_id,
                conteo_id=count_id,
                ajuste_masivo_id=adjustment_id,
                reserva_id=reservation_id,
                venta_id=sale_id,
            )
            db.session.add(movement)

            # 4. 更新汇总缓存
            product.stock_actual = after
            if variant is not None:
                variant.stock_actual = (variant.stock_actual or 0) + delta

            # 5. 同步货位库存
            if location is not None:
                if delta > 0:
                    InventoryService._put_into_location(tenant_id, location, product.id, quantity, lot, expiry)
                else:
                    InventoryService._take_from_location(tenant_id, location, product.id, quantity, lot)
            elif delta < 0:
                InventoryService._drain_located_surplus(tenant_id, product.id, after)

            db.session.flush()
            current_app.logger.info(
                f"[kardex] org={tenant_id} producto={product.id} {mtype.value} {delta:+d} "
                f"({before} -> {after}) mov={movement.id}"
            )
            return movement

    @staticmethod
    def _put_into_location(tenant_id, location, product_id, quantity, lot, expiry):
        if not location.puede_recibir(quantity):
            raise ValidationError(
                f"Location {location.codigo} has no capacity for {quantity}",
                payload={'ubicacion_id': location.id, 'capacidad_libre': location.capacidad_libre},
            )
        row = lock_location_stock(tenant_id, location.id, product_id, lot, create=True, expiry=expiry)
        row.cantidad += quantity
        if expiry and not row.fecha_vencimiento:
            row.fecha_vencimiento = expiry
        location.capacidad_ocupada = (location.capacidad_ocupada or 0) + quantity

    @staticmethod
    def _take_from_location(tenant_id, location, product_id, quantity, lot):
        """从指定货位出库；未指定批次时按先到期先出"""
        if lot is not None:
            rows = [lock_location_stock(tenant_id, location.id, product_id, lot)]
            rows = [r for r in rows if r is not None]
        else:
            rows = (LocationStock.query
                    .filter(LocationStock.organizacion_id == tenant_id,
                            LocationStock.ubicacion_id == location.id,
                            LocationStock.producto_id == product_id,
                            LocationStock.cantidad > 0)
                    .order_by(LocationStock.fecha_vencimiento.is_(None),
                              LocationStock.fecha_vencimiento,
                              LocationStock.fecha_entrada,
                              LocationStock.id)
                    .with_for_update()
                    .populate_existing()
                    .all())

        available = sum(r.cantidad for r in rows)
        if available < quantity:
            raise InsufficientLocationStock(
                f"Location {location.codigo} holds {available}, need {quantity}",
                payload={'ubicacion_id': location.id, 'producto_id': product_id,
                         'disponible': available, 'solicitado': quantity},
            )

        remaining = quantity
        for row in rows:
            if remaining == 0:
                break
            take = min(row.cantidad, remaining)
            row.cantidad -= take
            remaining -= take
        location.capacidad_ocupada = max(0, (location.capacidad_ocupada or 0) - quantity)

    @staticmethod
    def _drain_located_surplus(tenant_id, product_id, aggregate):
        """
        无货位出库后，货位合计不得超过商品汇总库存。
        超出部分依次从拣货位、最早入库的货位扣减。
        """
        surplus = located_quantity(tenant_id, product_id) - max(aggregate, 0)
        if surplus <= 0:
            return

        rows = (LocationStock.query
                .join(Location, Location.id == LocationStock.ubicacion_id)
                .filter(LocationStock.organizacion_id == tenant_id,
                        LocationStock.producto_id == product_id,
                        LocationStock.cantidad > 0)
                .order_by(Location.es_picking.desc(), LocationStock.fecha_entrada, LocationStock.id)
                .with_for_update(of=LocationStock)
                .populate_existing()
                .all())

        for row in rows:
            if surplus <= 0:
                break
            take = min(row.cantidad, surplus)
            row.cantidad -= take
            surplus -= take
            location = lock_row(Location, tenant_id, id=row.ubicacion_id)
            location.capacidad_ocupada = max(0, (location.capacidad_ocupada or 0) - take)

    @staticmethod
    def register_movement(tenant_id, data):
        """
        单条库存变动的公共入口 (自带租户事务)
        data: producto_id, tipo_movimiento, cantidad 以及可选字段
        """
        for field in ('producto_id', 'tipo_movimiento', 'cantidad'):
            if data.get(field) in (None, ''):
                raise ValidationError(f"Field '{field}' is required")
        try:
            quantity = int(data['cantidad'])
        except (TypeError, ValueError):
            raise ValidationError("Quantity must be a positive integer", payload={'cantidad': data['cantidad']})

        kwargs = {arg: data[field] for field, arg in _MOVEMENT_FIELDS.items() if data.get(field) is not None}
        with tenant_transaction(tenant_id):
            return InventoryService.apply_movement(
                tenant_id, data['producto_id'], data['tipo_movimiento'], quantity, **kwargs
            )

    @staticmethod
    def get_kardex(tenant_id, product_id, movement_type=None, date_from=None, date_to=None,
                   supplier_id=None, limit=100, offset=0):
        """商品流水历史 (按时间倒序)"""
        with tenant_session(tenant_id):
            product = Product.query.filter_by(organizacion_id=tenant_id, id=product_id).first()
            if product is None:
                raise NotFound(f"Product {product_id} not found")

            query = Movement.query.filter(Movement.organizacion_id == tenant_id,
                                          Movement.producto_id == product_id)
            if movement_type:
                query = query.filter(Movement.tipo_movimiento == _movement_type(movement_type).value)
            if supplier_id:
                query = query.filter(Movement.proveedor_id == supplier_id)
            query = _date_range(query, date_from, date_to)

            total = query.count()
            rows = (query.order_by(Movement.created_at.desc(), Movement.id.desc())
                    .limit(limit).offset(offset).all())
            return {
                'producto': {'id': product.id, 'sku': product.sku, 'nombre': product.nombre,
                             'stock_actual': product.stock_actual},
                'movimientos': rows,
                'total': total,
                'limit': limit,
                'offset': offset,
            }

    @staticmethod
    def list_movements(tenant_id, movement_type=None, category=None, product_id=None, supplier_id=None,
                       date_from=None, date_to=None, limit=50, offset=0):
        """
        流水列表 + 合计
        :param category: 'entrada' 或 'salida'
        """
        with tenant_session(tenant_id):
            query = Movement.query.filter(Movement.organizacion_id == tenant_id)
            if movement_type:
                query = query.filter(Movement.tipo_movimiento == _movement_type(movement_type).value)
            if category in ('entrada', 'salida'):
                query = query.filter(Movement.tipo_movimiento.like(f'{category}%'))
            elif category:
                raise ValidationError(f"Unknown movement category: {category}")
            if product_id:
                query = query.filter(Movement.producto_id == product_id)
            if supplier_id:
                query = query.filter(Movement.proveedor_id == supplier_id)
            query = _date_range(query, date_from, date_to)

            is_entry = Movement.tipo_movimiento.like('entrada%')
            totals = query.with_entities(
                func.count(Movement.id),
                func.coalesce(func.sum(case((is_entry, Movement.cantidad), else_=0)), 0),
                func.coalesce(func.sum(case((is_entry, 0), else_=func.abs(Movement.cantidad))), 0),
                func.coalesce(func.sum(Movement.valor_total), 0),
            ).one()

            rows = (query.order_by(Movement.created_at.desc(), Movement.id.desc())
                    .limit(limit).offset(offset).all())
            return {
                'movimientos': rows,
                'totales': {
                    'total_movimientos': totals[0],
                    'total_entradas': int(totals[1]),
                    'total_salidas': int(totals[2]),
                    'valor_total': round(float(totals[3]), 2),
                },
                'limit': limit,
                'offset': offset,
            }

    @staticmethod
    def get_stats(tenant_id, date_from, date_to):
        """按类型与方向汇总期间流水"""
        with tenant_session(tenant_id):
            query = _date_range(Movement.query.filter(Movement.organizacion_id == tenant_id),
                                date_from, date_to)
            rows = (query.with_entities(
                        Movement.tipo_movimiento,
                        func.count(Movement.id),
                        func.sum(func.abs(Movement.cantidad)),
                        func.sum(Movement.valor_total),
                        func.avg(func.abs(Movement.cantidad)))
                    .group_by(Movement.tipo_movimiento)
                    .order_by(func.count(Movement.id).desc())
                    .all())

            por_tipo = []
            resumen = {
                'entradas': {'total_movimientos': 0, 'total_unidades': 0, 'valor_total': 0.0},
                'salidas': {'total_movimientos': 0, 'total_unidades': 0, 'valor_total': 0.0},
            }
            for tipo, count, units, value, avg in rows:
                por_tipo.append({
                    'tipo_movimiento': tipo,
                    'total_movimientos': count,
                    'total_unidades': int(units or 0),
                    'valor_total': round(float(value or 0), 2),
                    'promedio_unidades': round(float(avg or 0), 2),
                })
                bucket = resumen['entradas' if MovementType(tipo).is_entry else 'salidas']
                bucket['total_movimientos'] += count
                bucket['total_unidades'] += int(units or 0)
                bucket['valor_total'] = round(bucket['valor_total'] + float(value or 0), 2)
            return {'por_tipo': por_tipo, 'resumen': resumen}

    @staticmethod
    def reconcile(tenant_id, product_ids=None, fix=False):
        """
        用流水重算 stock_actual (商品与变体)
        :return: 不一致记录列表；fix=True 时同时修正缓存
        """
        with tenant_transaction(tenant_id):
            ledger = (db.session.query(Movement.producto_id, func.sum(Movement.cantidad))
                      .filter(Movement.organizacion_id == tenant_id)
                      .group_by(Movement.producto_id))
            ledger_by_variant = (db.session.query(Movement.variante_id, func.sum(Movement.cantidad))
                                 .filter(Movement.organizacion_id == tenant_id,
                                         Movement.variante_id.isnot(None))
                                 .group_by(Movement.variante_id))
            totals = {pid: int(total or 0) for pid, total in ledger}
            variant_totals = {vid: int(total or 0) for vid, total in ledger_by_variant}

            query = Product.query.filter_by(organizacion_id=tenant_id)
            if product_ids:
                query = query.filter(Product.id.in_(product_ids))
            if fix:
                query = query.with_for_update().populate_existing()

            discrepancies = []
            for product in query.order_by(Product.id).all():
                expected = totals.get(product.id, 0)
                if product.stock_actual != expected:
                    discrepancies.append({'producto_id': product.id, 'variante_id': None,
                                          'stock_actual': product.stock_actual, 'stock_kardex': expected})
                    if fix:
                        product.stock_actual = expected
                for variant in product.variantes:
                    expected = variant_totals.get(variant.id, 0)
                    if variant.stock_actual != expected:
                        discrepancies.append({'producto_id': product.id, 'variante_id': variant.id,
                                              'stock_actual': variant.stock_actual, 'stock_kardex': expected})
                        if fix:
                            variant.stock_actual = expected

            if discrepancies:
                current_app.logger.warning(
                    f"[kardex] org={tenant_id} {len(discrepancies)} stock cache mismatches"
                    f"{' fixed' if fix else ''}"
                )
            return discrepancies
