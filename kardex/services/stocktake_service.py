"""盘点服务"""
from datetime import datetime
from flask import current_app
from sqlalchemy import func, or_
from kardex.extensions import db
from kardex.models.biz import Product, ProductVariant
from kardex.models.stock import MovementType, LocationStock
from kardex.models.stocktake import StockTake, StockTakeItem
from kardex.exceptions import NotFound, ValidationError, InvalidState, PendingItems
from kardex.utils.tenancy import tenant_transaction, tenant_session, lock_row
from .inventory_service import InventoryService
from .folio_service import FolioService


class StockTakeService:
    """盘点服务"""

    @staticmethod
    def _lock(tenant_id, stocktake_id):
        stocktake = lock_row(StockTake, tenant_id, id=stocktake_id)
        if stocktake is None:
            raise NotFound(f"Stock count {stocktake_id} not found")
        return stocktake

    @staticmethod
    def create_stocktake(tenant_id, tipo_conteo=StockTake.TYPE_TOTAL, filtros=None, sucursal_id=None,
                         nombre=None, fecha_programada=None, user_id=None, notas=None):
        """
        创建盘点单 (borrador)
        :param filtros: categoria_ids / ubicacion_ids / producto_ids / cantidad_muestra / solo_con_stock
        """
        if tipo_conteo not in StockTake.TYPES:
            raise ValidationError(f"Unknown count type: {tipo_conteo}")
        filtros = dict(filtros or {})

        with tenant_transaction(tenant_id):
            stocktake = StockTake(
                organizacion_id=tenant_id,
                folio=FolioService.next_folio(tenant_id, FolioService.COUNT),
                sucursal_id=sucursal_id,
                nombre=nombre,
                tipo_conteo=tipo_conteo,
                filtros=filtros,
                estado=StockTake.STATUS_DRAFT,
                fecha_programada=fecha_programada,
                creado_por=user_id,
                notas=notas,
            )
            db.session.add(stocktake)
            db.session.flush()
            return stocktake

    @staticmethod
    def _scope_products(tenant_id, stocktake):
        """按盘点类型选出商品"""
        filtros = stocktake.filtros or {}
        query = Product.query.filter(Product.organizacion_id == tenant_id, Product.activo.is_(True))

        if stocktake.tipo_conteo == StockTake.TYPE_CATEGORY:
            category_ids = filtros.get('categoria_ids') or (
                [filtros['categoria_id']] if filtros.get('categoria_id') else [])
            if not category_ids:
                raise ValidationError("A category count needs at least one category")
            query = query.filter(Product.categoria_id.in_(category_ids))
        elif stocktake.tipo_conteo == StockTake.TYPE_CYCLE:
            product_ids = filtros.get('producto_ids') or []
            if not product_ids:
                raise ValidationError("A cycle count needs an explicit product list")
            query = query.filter(Product.id.in_(product_ids))

        if filtros.get('solo_con_stock'):
            query = query.filter(Product.stock_actual > 0)

        if stocktake.tipo_conteo == StockTake.TYPE_RANDOM:
            sample = filtros.get('cantidad_muestra') or current_app.config['COUNT_RANDOM_SAMPLE']
            return query.order_by(func.random()).limit(sample).all()
        return query.order_by(Product.nombre).all()

    @staticmethod
    def _build_items(tenant_id, stocktake):
        items = []
        if stocktake.tipo_conteo == StockTake.TYPE_LOCATION:
            filtros = stocktake.filtros or {}
            location_ids = filtros.get('ubicacion_ids') or (
                [filtros['ubicacion_id']] if filtros.get('ubicacion_id') else [])
            if not location_ids:
                raise ValidationError("A location count needs at least one location")
            rows = (db.session.query(LocationStock.ubicacion_id, LocationStock.producto_id,
                                     func.sum(LocationStock.cantidad))
                    .join(Product, Product.id == LocationStock.producto_id)
                    .filter(LocationStock.organizacion_id == tenant_id,
                            LocationStock.ubicacion_id.in_(location_ids),
                            Product.activo.is_(True))
                    .group_by(LocationStock.ubicacion_id, LocationStock.producto_id)
                    .order_by(LocationStock.ubicacion_id, LocationStock.producto_id)
                    .all())
            for location_id, product_id, quantity in rows:
                if filtros.get('solo_con_stock') and not quantity:
                    continue
                product = db.session.get(Product, product_id)
                items.append(StockTakeItem(
                    organizacion_id=tenant_id, producto_id=product_id, ubicacion_id=location_id,
                    cantidad_sistema=int(quantity or 0), costo_unitario=product.costo_unitario or 0.0,
                ))
            return items

        for product in StockTakeService._scope_products(tenant_id, stocktake):
            variants = []
            if product.tiene_variantes:
                variants = product.variantes.filter(ProductVariant.activo.is_(True)).order_by(ProductVariant.id).all()
            if variants:
                for variant in variants:
                    items.append(StockTakeItem(
                        organizacion_id=tenant_id, producto_id=product.id, variante_id=variant.id,
                        cantidad_sistema=variant.stock_actual or 0, costo_unitario=variant.costo_efectivo,
                    ))
            else:
                items.append(StockTakeItem(
                    organizacion_id=tenant_id, producto_id=product.id,
                    cantidad_sistema=product.stock_actual or 0, costo_unitario=product.costo_unitario or 0.0,
                ))
        return items

    @staticmethod
    def start(tenant_id, stocktake_id):
        """开始盘点：按范围生成明细并快照系统数量"""
        with tenant_transaction(tenant_id):
            stocktake = StockTakeService._lock(tenant_id, stocktake_id)
            if stocktake.estado != StockTake.STATUS_DRAFT:
                raise InvalidState(f"Only draft counts can be started (current: {stocktake.estado})")

            items = StockTakeService._build_items(tenant_id, stocktake)
            if not items:
                raise ValidationError("No products match the count filters")
            for item in items:
                item.estado = StockTakeItem.STATUS_PENDING
                item.diferencia = 0
                item.valor_diferencia = 0.0
                stocktake.items.append(item)

            stocktake.estado = StockTake.STATUS_IN_PROGRESS
            stocktake.iniciado_en = datetime.utcnow()
            StockTakeService._refresh_totals(stocktake)
            db.session.flush()
            current_app.logger.info(f"[conteo] org={tenant_id} {stocktake.folio} iniciado con {len(items)} items")
            return stocktake

    @staticmethod
    def _refresh_totals(stocktake):
        items = stocktake.items
        stocktake.total_items = len(items)
        stocktake.items_contados = sum(1 for i in items if i.estado != StockTakeItem.STATUS_PENDING)
        stocktake.items_con_diferencia = sum(1 for i in items if i.diferencia)
        stocktake.valor_diferencia = round(sum(i.valor_diferencia or 0 for i in items), 2)

    @staticmethod
    def input_count(tenant_id, item_id, counted, user_id=None, notas=None):
        """录入实盘数量 (可重复录入)"""
        if isinstance(counted, bool) or not isinstance(counted, int) or counted < 0:
            raise ValidationError("Counted quantity must be a non-negative integer")

        with tenant_transaction(tenant_id):
            item = lock_row(StockTakeItem, tenant_id, id=item_id)
            if item is None:
                raise NotFound(f"Count item {item_id} not found")
            stocktake = StockTakeService._lock(tenant_id, item.conteo_id)
            if stocktake.estado != StockTake.STATUS_IN_PROGRESS:
                raise InvalidState("Counts can only be recorded while the count is in progress")

            item.cantidad_contada = counted
            item.diferencia = counted - (item.cantidad_sistema or 0)
            item.valor_diferencia = round(item.diferencia * (item.costo_unitario or 0), 2)
            item.estado = StockTakeItem.STATUS_COUNTED
            item.contado_en = datetime.utcnow()
            item.contado_por = user_id
            if notas is not None:
                item.notas = notas
            StockTakeService._refresh_totals(stocktake)
            return item

    @staticmethod
    def find_item_by_code(tenant_id, stocktake_id, code):
        """按 SKU / 条码在盘点单内查找明细 (扫码录入)"""
        with tenant_session(tenant_id):
            return (StockTakeItem.query
                    .join(Product, Product.id == StockTakeItem.producto_id)
                    .outerjoin(ProductVariant, ProductVariant.id == StockTakeItem.variante_id)
                    .filter(StockTakeItem.organizacion_id == tenant_id,
                            StockTakeItem.conteo_id == stocktake_id,
                            or_(ProductVariant.sku == code, ProductVariant.codigo_barras == code,
                                Product.sku == code, Product.codigo_barras == code))
                    .order_by(StockTakeItem.variante_id.is_(None), StockTakeItem.id)
                    .first())

    @staticmethod
    def complete(tenant_id, stocktake_id):
        with tenant_transaction(tenant_id):
            stocktake = StockTakeService._lock(tenant_id, stocktake_id)
            if stocktake.estado != StockTake.STATUS_IN_PROGRESS:
                raise InvalidState(f"Only counts in progress can be completed (current: {stocktake.estado})")
            pending = sum(1 for i in stocktake.items if i.estado == StockTakeItem.STATUS_PENDING)
            if pending:
                raise PendingItems(f"{pending} items are still pending", payload={'pendientes': pending})

            StockTakeService._refresh_totals(stocktake)
            stocktake.estado = StockTake.STATUS_COMPLETED
            stocktake.completado_en = datetime.utcnow()
            return stocktake

    @staticmethod
    def apply_adjustments(tenant_id, stocktake_id, user_id=None):
        """
        按差异生成 entrada_ajuste / salida_ajuste 流水
        差异为 0 的明细不产生流水
        """
        with tenant_transaction(tenant_id):
            stocktake = StockTakeService._lock(tenant_id, stocktake_id)
            if stocktake.estado != StockTake.STATUS_COMPLETED:
                raise InvalidState(f"Only completed counts can be adjusted (current: {stocktake.estado})")

            applied = []
            items = sorted((i for i in stocktake.items if i.diferencia), key=lambda i: (i.producto_id, i.id))
            for item in items:
                movement = InventoryService.apply_movement(
                    tenant_id, item.producto_id, MovementType.adjustment_for(item.diferencia), abs(item.diferencia),
                    variant_id=item.variante_id,
                    location_id=item.ubicacion_id,
                    unit_cost=item.costo_unitario,
                    user_id=user_id,
                    count_id=stocktake.id,
                    reference=f"Conteo: {stocktake.folio}",
                    reason=f"Ajuste por conteo físico. Diferencia: {item.diferencia}",
                    allow_correction=True,
                )
                item.movimiento_id = movement.id
                item.estado = StockTakeItem.STATUS_ADJUSTED
                applied.append({'item_id': item.id, 'producto_id': item.producto_id,
                                'diferencia': item.diferencia, 'movimiento_id': movement.id})

            stocktake.estado = StockTake.STATUS_ADJUSTED
            stocktake.ajustado_en = datetime.utcnow()
            stocktake.ajustado_por = user_id
            current_app.logger.info(f"[conteo] org={tenant_id} {stocktake.folio} ajustado: {len(applied)} movimientos")
            return {'conteo': stocktake, 'ajustes_realizados': applied}

    @staticmethod
    def cancel(tenant_id, stocktake_id, reason=None):
        with tenant_transaction(tenant_id):
            stocktake = StockTakeService._lock(tenant_id, stocktake_id)
            if stocktake.estado == StockTake.STATUS_ADJUSTED:
                raise InvalidState("An adjusted count cannot be cancelled")
            if stocktake.estado == StockTake.STATUS_CANCELLED:
                raise InvalidState("Count is already cancelled")
            stocktake.estado = StockTake.STATUS_CANCELLED
            stocktake.cancelado_en = datetime.utcnow()
            if reason:
                stocktake.notas = f"{stocktake.notas}\n[Cancelado] {reason}" if stocktake.notas else f"[Cancelado] {reason}"
            return stocktake

    @staticmethod
    def get_stocktake(tenant_id, stocktake_id):
        with tenant_session(tenant_id):
            stocktake = StockTake.query.filter_by(organizacion_id=tenant_id, id=stocktake_id).first()
            if stocktake is None:
                raise NotFound(f"Stock count {stocktake_id} not found")
            return stocktake

    @staticmethod
    def list_stocktakes(tenant_id, estado=None, tipo_conteo=None, sucursal_id=None, limit=50, offset=0):
        with tenant_session(tenant_id):
            query = StockTake.query.filter_by(organizacion_id=tenant_id)
            if estado:
                query = query.filter_by(estado=estado)
            if tipo_conteo:
                query = query.filter_by(tipo_conteo=tipo_conteo)
            if sucursal_id is not None:
                query = query.filter_by(sucursal_id=sucursal_id)
            total = query.count()
            rows = query.order_by(StockTake.created_at.desc()).limit(limit).offset(offset).all()
            return {'conteos': rows, 'total': total, 'limit': limit, 'offset': offset}

    @staticmethod
    def get_summary(tenant_id, stocktake_id):
        """盘点汇总：按明细状态与盘盈/盘亏统计"""
        stocktake = StockTakeService.get_stocktake(tenant_id, stocktake_id)
        items = stocktake.items
        surplus = [i for i in items if (i.diferencia or 0) > 0]
        shortage = [i for i in items if (i.diferencia or 0) < 0]
        return {
            'folio': stocktake.folio,
            'estado': stocktake.estado,
            'total_items': len(items),
            'pendientes': sum(1 for i in items if i.estado == StockTakeItem.STATUS_PENDING),
            'contados': sum(1 for i in items if i.estado == StockTakeItem.STATUS_COUNTED),
            'ajustados': sum(1 for i in items if i.estado == StockTakeItem.STATUS_ADJUSTED),
            'con_diferencia': len(surplus) + len(shortage),
            'sobrantes': len(surplus),
            'faltantes': len(shortage),
            'unidades_sobrantes': sum(i.diferencia for i in surplus),
            'unidades_faltantes': sum(-i.diferencia for i in shortage),
            'valor_sobrantes': round(sum(i.valor_diferencia or 0 for i in surplus), 2),
            'valor_faltantes': round(sum(-(i.valor_diferencia or 0) for i in shortage), 2),
            'valor_diferencia': round(sum(i.valor_diferencia or 0 for i in items), 2),
            'progreso': stocktake.progreso,
        }

    @staticmethod
    def get_stats(tenant_id, date_from, date_to):
        """期间盘点统计"""
        with tenant_session(tenant_id):
            counts = (StockTake.query
                      .filter(StockTake.organizacion_id == tenant_id,
                              StockTake.created_at >= date_from, StockTake.created_at <= date_to)
                      .all())
            items = [i for c in counts for i in c.items]
            return {
                'total_conteos': len(counts),
                'conteos_completados': sum(1 for c in counts if c.estado in (StockTake.STATUS_COMPLETED,
                                                                             StockTake.STATUS_ADJUSTED)),
                'conteos_con_diferencias': sum(1 for c in counts if c.items_con_diferencia),
                'total_items_contados': sum(1 for i in items if i.estado != StockTakeItem.STATUS_PENDING),
                'items_con_diferencia': sum(1 for i in items if i.diferencia),
                'valor_ajustes_positivos': round(sum(i.valor_diferencia for i in items
                                                     if (i.valor_diferencia or 0) > 0), 2),
                'valor_ajustes_negativos': round(sum(i.valor_diferencia for i in items
                                                     if (i.valor_diferencia or 0) < 0), 2),
            }
