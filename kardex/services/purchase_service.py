"""采购管理服务"""
from datetime import datetime
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from kardex.extensions import db
from kardex.models.biz import Product, Supplier
from kardex.models.stock import MovementType
from kardex.models.purchase import PurchaseOrder, PurchaseOrderItem, PurchaseReceipt, PurchasePriceHistory
from kardex.exceptions import KardexException, NotFound, ValidationError, InvalidState
from kardex.utils.tenancy import tenant_transaction, tenant_session, lock_row
from .inventory_service import InventoryService
from .folio_service import FolioService
from .approval import get_gateway

_ORDER_FIELDS = (
    'fecha_entrega_esperada', 'descuento_porcentaje', 'descuento_monto', 'impuestos',
    'dias_credito', 'notas', 'referencia_proveedor', 'sucursal_id',
)
_ITEM_FIELDS = ('cantidad_ordenada', 'precio_unitario', 'descuento_porcentaje', 'fecha_vencimiento', 'notas')


class PurchaseService:
    """采购服务"""

    @staticmethod
    def _lock_order(tenant_id, order_id):
        order = lock_row(PurchaseOrder, tenant_id, id=order_id)
        if order is None:
            raise NotFound(f"Purchase order {order_id} not found")
        return order

    @staticmethod
    def _require_draft(order):
        if order.estado != PurchaseOrder.STATUS_DRAFT:
            raise InvalidState(f"Order {order.folio} is {order.estado}; only drafts can be edited")

    @staticmethod
    def recalculate_totals(order):
        """subtotal - 折扣 + 税 = total"""
        subtotal = round(sum(item.subtotal for item in order.items
                             if item.estado != PurchaseOrderItem.STATUS_CANCELLED), 2)
        discount = subtotal * (order.descuento_porcentaje or 0) / 100 + (order.descuento_monto or 0)
        order.subtotal = subtotal
        order.total = round(max(0.0, subtotal - discount) + (order.impuestos or 0), 2)

    @staticmethod
    def _add_items(tenant_id, order, items_data):
        existing = {item.producto_id for item in order.items}
        for data in items_data:
            product_id = data.get('producto_id')
            quantity = data.get('cantidad_ordenada')
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
                raise ValidationError("Ordered quantity must be a positive integer",
                                      payload={'producto_id': product_id})
            product = Product.query.filter_by(organizacion_id=tenant_id, id=product_id, activo=True).first()
            if product is None:
                raise NotFound(f"Product {product_id} not found or inactive")
            if product.id in existing:
                raise ValidationError(f"Product '{product.nombre}' is already on this order")
            existing.add(product.id)

            price = data.get('precio_unitario')
            if price is None:
                price = PurchaseService.get_supplier_price(tenant_id, product.id, order.proveedor_id)
            if price < 0:
                raise ValidationError("Unit price cannot be negative")

            order.items.append(PurchaseOrderItem(
                organizacion_id=tenant_id,
                producto_id=product.id,
                variante_id=data.get('variante_id'),
                nombre_producto=product.nombre,
                sku=product.sku,
                cantidad_ordenada=quantity,
                cantidad_recibida=0,
                precio_unitario=price,
                descuento_porcentaje=data.get('descuento_porcentaje') or 0,
                fecha_vencimiento=data.get('fecha_vencimiento'),
                notas=data.get('notas'),
                estado=PurchaseOrderItem.STATUS_PENDING,
            ))

    @staticmethod
    def create_order(tenant_id, data):
        """
        创建采购订单 (borrador)
        :param data: {'proveedor_id': 1, 'items': [{'producto_id': 1, 'cantidad_ordenada': 10, 'precio_unitario': 50.0}], ...}
        """
        with tenant_transaction(tenant_id):
            supplier = Supplier.query.filter_by(organizacion_id=tenant_id, id=data.get('proveedor_id'),
                                                activo=True).first()
            if supplier is None:
                raise NotFound("Supplier not found or inactive")

            order = PurchaseOrder(
                organizacion_id=tenant_id,
                folio=FolioService.next_folio(tenant_id, FolioService.ORDER),
                proveedor_id=supplier.id,
                estado=PurchaseOrder.STATUS_DRAFT,
                estado_pago=PurchaseOrder.PAYMENT_PENDING,
                monto_pagado=0.0,
                usuario_id=data.get('usuario_id'),
                **{k: data[k] for k in _ORDER_FIELDS if data.get(k) is not None}
            )
            if order.dias_credito is None:
                order.dias_credito = supplier.dias_credito
            db.session.add(order)

            PurchaseService._add_items(tenant_id, order, data.get('items') or [])
            PurchaseService.recalculate_totals(order)
            db.session.flush()
            current_app.logger.info(f"[compras] org={tenant_id} orden {order.folio} creada ({len(order.items)} items)")
            return order

    @staticmethod
    def _suggested_quantity(product, default_quantity=50):
        """建议数量：max(建议基数, stock_maximo - stock_actual)"""
        quantity = product.cantidad_oc_sugerida or default_quantity
        if product.stock_maximo:
            quantity = max(quantity, product.stock_maximo - (product.stock_actual or 0))
        return quantity

    @staticmethod
    def _products_on_open_orders(tenant_id):
        """已在未完成采购单 (borrador / 待审批 / 已发送 / 部分到货) 上的商品"""
        rows = (db.session.query(PurchaseOrderItem.producto_id)
                .join(PurchaseOrder, PurchaseOrder.id == PurchaseOrderItem.orden_id)
                .filter(PurchaseOrder.organizacion_id == tenant_id,
                        PurchaseOrder.estado.in_(PurchaseOrder.OPEN_STATUSES))
                .distinct().all())
        return {row[0] for row in rows}

    @staticmethod
    def _low_stock_query(tenant_id):
        return Product.query.filter(Product.organizacion_id == tenant_id,
                                    Product.activo.is_(True),
                                    Product.stock_minimo > 0,
                                    Product.stock_actual <= Product.stock_minimo)

    @staticmethod
    def create_from_low_stock(tenant_id, product_id, user_id=None, default_quantity=50):
        """按单个商品的库存预警生成采购单"""
        with tenant_transaction(tenant_id):
            product = Product.query.filter_by(organizacion_id=tenant_id, id=product_id, activo=True).first()
            if product is None:
                raise NotFound(f"Product {product_id} not found")
            if not product.proveedor_id:
                raise ValidationError(f"Product '{product.nombre}' has no default supplier")

            return PurchaseService.create_order(tenant_id, {
                'proveedor_id': product.proveedor_id,
                'usuario_id': user_id,
                'notas': f"Generada por stock bajo: {product.nombre} ({product.sku or 'sin SKU'})",
                'items': [{'producto_id': product.id,
                           'cantidad_ordenada': PurchaseService._suggested_quantity(product, default_quantity),
                           'precio_unitario': product.costo_unitario or 0}],
            })

    @staticmethod
    def generate_automatic_orders(tenant_id, user_id=None, default_quantity=50):
        """
        自动补货：为所有开启 auto_generar_oc 且低于最低库存的商品，
        按默认供应商各生成一张采购草稿。已在未完成采购单上的商品跳过。
        :return: 新建的 PurchaseOrder 列表
        """
        with tenant_transaction(tenant_id):
            on_order = PurchaseService._products_on_open_orders(tenant_id)
            products = (PurchaseService._low_stock_query(tenant_id)
                        .filter(Product.auto_generar_oc.is_(True), Product.proveedor_id.isnot(None))
                        .order_by(Product.proveedor_id, Product.id).all())

            by_supplier = {}
            for product in products:
                if product.id not in on_order:
                    by_supplier.setdefault(product.proveedor_id, []).append(product)

            orders = []
            for supplier_id, items in by_supplier.items():
                orders.append(PurchaseService.create_order(tenant_id, {
                    'proveedor_id': supplier_id,
                    'usuario_id': user_id,
                    'notas': "OC auto-generada por stock bajo. Productos: " + ', '.join(p.nombre for p in items),
                    'items': [{'producto_id': p.id,
                               'cantidad_ordenada': PurchaseService._suggested_quantity(p, default_quantity),
                               'precio_unitario': p.costo_unitario or 0} for p in items],
                }))
            current_app.logger.info(f"[compras] org={tenant_id} {len(orders)} órdenes automáticas generadas")
            return orders

    @staticmethod
    def get_reorder_suggestions(tenant_id, default_quantity=50):
        """低库存商品补货建议，按供应商 (无供应商排最后) 和缺口大小排序"""
        with tenant_session(tenant_id):
            on_order = PurchaseService._products_on_open_orders(tenant_id)
            products = PurchaseService._low_stock_query(tenant_id).all()
            products.sort(key=lambda p: (p.proveedor_id is None, p.proveedor_id or 0,
                                         -((p.stock_minimo or 0) - (p.stock_actual or 0)), p.id))
            return [{
                'producto_id': p.id,
                'nombre': p.nombre,
                'sku': p.sku,
                'stock_actual': p.stock_actual,
                'stock_minimo': p.stock_minimo,
                'stock_maximo': p.stock_maximo,
                'costo_unitario': p.costo_unitario,
                'auto_generar_oc': bool(p.auto_generar_oc),
                'proveedor_id': p.proveedor_id,
                'proveedor_nombre': p.proveedor.nombre if p.proveedor else None,
                'cantidad_sugerida': PurchaseService._suggested_quantity(p, default_quantity),
                'tiene_oc_pendiente': p.id in on_order,
            } for p in products]

    @staticmethod
    def update_order(tenant_id, order_id, data):
        with tenant_transaction(tenant_id):
            order = PurchaseService._lock_order(tenant_id, order_id)
            PurchaseService._require_draft(order)
            fields = [k for k in _ORDER_FIELDS if k in data]
            if not fields:
                raise ValidationError("No fields to update")
            for key in fields:
                setattr(order, key, data[key])
            PurchaseService.recalculate_totals(order)
            return order

    @staticmethod
    def add_items(tenant_id, order_id, items_data):
        with tenant_transaction(tenant_id):
            order = PurchaseService._lock_order(tenant_id, order_id)
            PurchaseService._require_draft(order)
            PurchaseService._add_items(tenant_id, order, items_data)
            PurchaseService.recalculate_totals(order)
            db.session.flush()
            return order

    @staticmethod
    def _get_item(order, item_id):
        for item in order.items:
            if item.id == item_id:
                return item
        raise NotFound(f"Item {item_id} not found on order {order.folio}")

    @staticmethod
    def update_item(tenant_id, order_id, item_id, data):
        with tenant_transaction(tenant_id):
            order = PurchaseService._lock_order(tenant_id, order_id)
            PurchaseService._require_draft(order)
            item = PurchaseService._get_item(order, item_id)
            fields = [k for k in _ITEM_FIELDS if k in data]
            if not fields:
                raise ValidationError("No fields to update")
            quantity = data.get('cantidad_ordenada', item.cantidad_ordenada)
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
                raise ValidationError("Ordered quantity must be a positive integer")
            for key in fields:
                setattr(item, key, data[key])
            PurchaseService.recalculate_totals(order)
            return item

    @staticmethod
    def remove_item(tenant_id, order_id, item_id):
        with tenant_transaction(tenant_id):
            order = PurchaseService._lock_order(tenant_id, order_id)
            PurchaseService._require_draft(order)
            order.items.remove(PurchaseService._get_item(order, item_id))
            PurchaseService.recalculate_totals(order)
            return order

    @staticmethod
    def delete_order(tenant_id, order_id):
        with tenant_transaction(tenant_id):
            order = PurchaseService._lock_order(tenant_id, order_id)
            PurchaseService._require_draft(order)
            db.session.delete(order)

    @staticmethod
    def submit(tenant_id, order_id, user_id=None):
        """
        发送订单
        需要审批时进入 pendiente_aprobacion，并在同一事务内启动审批流程
        """
        with tenant_transaction(tenant_id) as session:
            order = PurchaseService._lock_order(tenant_id, order_id)
            PurchaseService._require_draft(order)
            if not order.items:
                raise ValidationError("Cannot submit an order without items")

            gateway = get_gateway()
            context = {'total': order.total, 'proveedor_id': order.proveedor_id, 'folio': order.folio}
            workflow = gateway.evaluate_requires_approval('orden_compra', order.id, context, user_id, tenant_id)
            if workflow:
                order.estado = PurchaseOrder.STATUS_PENDING_APPROVAL
                gateway.start_approval(workflow, 'orden_compra', order.id, context, user_id, tenant_id, tx=session)
            else:
                order.estado = PurchaseOrder.STATUS_SENT
                order.enviada_en = datetime.utcnow()
            current_app.logger.info(f"[compras] org={tenant_id} orden {order.folio} -> {order.estado}")
            return order

    @staticmethod
    def resolve_approval(tenant_id, order_id, approved):
        """审批结果回调"""
        with tenant_transaction(tenant_id):
            order = PurchaseService._lock_order(tenant_id, order_id)
            if order.estado != PurchaseOrder.STATUS_PENDING_APPROVAL:
                raise InvalidState(f"Order {order.folio} is not awaiting approval")
            if approved:
                order.estado = PurchaseOrder.STATUS_SENT
                order.enviada_en = datetime.utcnow()
            else:
                order.estado = PurchaseOrder.STATUS_DRAFT
            return order

    @staticmethod
    def _receive_line(tenant_id, order, receipt, user_id):
        item_id = receipt.get('item_id')
        item = lock_row(PurchaseOrderItem, tenant_id, id=item_id, orden_id=order.id)
        if item is None:
            raise NotFound(f"Item {item_id} not found on order {order.folio}")
        if item.estado == PurchaseOrderItem.STATUS_COMPLETE:
            raise InvalidState(f"Item '{item.nombre_producto}' was already received in full")
        if item.estado == PurchaseOrderItem.STATUS_CANCELLED:
            raise InvalidState(f"Item '{item.nombre_producto}' is cancelled")

        quantity = receipt.get('cantidad')
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Received quantity must be a positive integer", payload={'item_id': item.id})
        pending = item.cantidad_pendiente
        if quantity > pending:
            raise ValidationError(
                f"Cannot receive {quantity} of '{item.nombre_producto}', pending {pending}",
                payload={'item_id': item.id, 'pendiente': pending, 'solicitado': quantity},
            )

        real_price = receipt.get('precio_unitario_real')
        price = real_price if real_price is not None else item.precio_unitario
        lot = receipt.get('lote') or item.lote
        expiry = receipt.get('fecha_vencimiento') or item.fecha_vencimiento

        movement = InventoryService.apply_movement(
            tenant_id, item.producto_id, MovementType.ENTRADA_COMPRA, quantity,
            variant_id=item.variante_id,
            location_id=receipt.get('ubicacion_id'),
            lot=lot,
            expiry=expiry,
            unit_cost=price,
            supplier_id=order.proveedor_id,
            user_id=user_id,
            order_id=order.id,
            reference=f"OC: {order.folio}",
            reason='Recepción de orden de compra',
        )

        item.cantidad_recibida += quantity
        item.lote = lot
        item.fecha_vencimiento = expiry
        item.estado = (PurchaseOrderItem.STATUS_COMPLETE if item.cantidad_pendiente == 0
                       else PurchaseOrderItem.STATUS_PARTIAL)

        db.session.add(PurchaseReceipt(
            organizacion_id=tenant_id,
            orden_id=order.id,
            item_id=item.id,
            movimiento_id=movement.id,
            ubicacion_id=receipt.get('ubicacion_id'),
            cantidad=quantity,
            precio_unitario=real_price,
            lote=lot,
            fecha_vencimiento=expiry,
            usuario_id=user_id,
        ))
        PurchaseService.record_price_history(tenant_id, item.producto_id, order.proveedor_id, price, order.id)

        # 实际价格与下单价不同时更新商品成本
        if real_price is not None and real_price != item.precio_unitario:
            product = lock_row(Product, tenant_id, id=item.producto_id)
            product.costo_unitario = real_price

        return {
            'item_id': item.id,
            'producto_id': item.producto_id,
            'nombre_producto': item.nombre_producto,
            'cantidad_recibida': quantity,
            'nuevo_stock': movement.stock_despues,
            'movimiento_id': movement.id,
        }

    @staticmethod
    def receive_items(tenant_id, order_id, receipts, user_id=None, partial=False):
        """
        收货
        :param receipts: [{'item_id': 1, 'cantidad': 5, 'precio_unitario_real'?, 'lote'?, 'fecha_vencimiento'?, 'ubicacion_id'?}]
        :param partial: True 时每行在 savepoint 中执行，失败行记录在 errores 中
        :return: {'orden', 'recibidos', 'errores'}
        """
        if not receipts:
            raise ValidationError("No receipt lines")

        with tenant_transaction(tenant_id):
            order = PurchaseService._lock_order(tenant_id, order_id)
            if order.estado not in (PurchaseOrder.STATUS_SENT, PurchaseOrder.STATUS_PARTIAL):
                raise InvalidState(f"Order {order.folio} is {order.estado}; cannot receive goods")

            received, errors = [], []
            for receipt in receipts:
                if not partial:
                    received.append(PurchaseService._receive_line(tenant_id, order, receipt, user_id))
                    continue
                savepoint = db.session.begin_nested()
                try:
                    line = PurchaseService._receive_line(tenant_id, order, receipt, user_id)
                    db.session.flush()
                    savepoint.commit()
                    received.append(line)
                except (KardexException, SQLAlchemyError) as e:
                    savepoint.rollback()
                    errors.append({'item_id': receipt.get('item_id'), 'error': e.__class__.__name__,
                                   'mensaje': getattr(e, 'message', str(e))})

            if received:
                db.session.flush()
                db.session.refresh(order)
                active = [i for i in order.items if i.estado != PurchaseOrderItem.STATUS_CANCELLED]
                if all(i.estado == PurchaseOrderItem.STATUS_COMPLETE for i in active):
                    order.estado = PurchaseOrder.STATUS_RECEIVED
                    order.recibida_en = datetime.utcnow()
                else:
                    order.estado = PurchaseOrder.STATUS_PARTIAL

            current_app.logger.info(
                f"[compras] org={tenant_id} orden {order.folio} recepción: "
                f"{len(received)} líneas, {len(errors)} errores -> {order.estado}"
            )
            return {'orden': order, 'recibidos': received, 'errores': errors}

    @staticmethod
    def cancel(tenant_id, order_id, reason=None, user_id=None):
        with tenant_transaction(tenant_id):
            order = PurchaseService._lock_order(tenant_id, order_id)
            if order.estado == PurchaseOrder.STATUS_RECEIVED:
                raise InvalidState("A fully received order cannot be cancelled")
            if order.estado == PurchaseOrder.STATUS_CANCELLED:
                raise InvalidState("Order is already cancelled")

            for item in order.items:
                if item.estado in (PurchaseOrderItem.STATUS_PENDING, PurchaseOrderItem.STATUS_PARTIAL):
                    item.estado = PurchaseOrderItem.STATUS_CANCELLED
            order.estado = PurchaseOrder.STATUS_CANCELLED
            order.cancelada_en = datetime.utcnow()
            if reason:
                order.notas = f"{order.notas}\n[Cancelada] {reason}" if order.notas else f"[Cancelada] {reason}"
            current_app.logger.info(f"[compras] org={tenant_id} orden {order.folio} cancelada")
            return order

    @staticmethod
    def register_payment(tenant_id, order_id, amount):
        """登记付款 (仅已收货订单)，不影响库存"""
        if amount is None or amount <= 0:
            raise ValidationError("Payment amount must be positive")
        with tenant_transaction(tenant_id):
            order = PurchaseService._lock_order(tenant_id, order_id)
            if order.estado != PurchaseOrder.STATUS_RECEIVED:
                raise InvalidState("Payments can only be registered on received orders")

            order.monto_pagado = round((order.monto_pagado or 0) + amount, 2)
            if order.monto_pagado >= (order.total or 0):
                order.estado_pago = PurchaseOrder.PAYMENT_PAID
            else:
                order.estado_pago = PurchaseOrder.PAYMENT_PARTIAL
            return order

    @staticmethod
    def get_order(tenant_id, order_id):
        with tenant_session(tenant_id):
            order = PurchaseOrder.query.filter_by(organizacion_id=tenant_id, id=order_id).first()
            if order is None:
                raise NotFound(f"Purchase order {order_id} not found")
            return order

    @staticmethod
    def list_orders(tenant_id, estado=None, supplier_id=None, estado_pago=None, limit=50, offset=0):
        with tenant_session(tenant_id):
            query = PurchaseOrder.query.filter_by(organizacion_id=tenant_id)
            if estado:
                query = query.filter_by(estado=estado)
            if supplier_id:
                query = query.filter_by(proveedor_id=supplier_id)
            if estado_pago:
                query = query.filter_by(estado_pago=estado_pago)
            total = query.count()
            rows = query.order_by(PurchaseOrder.created_at.desc()).limit(limit).offset(offset).all()
            return {'ordenes': rows, 'total': total, 'limit': limit, 'offset': offset}

    @staticmethod
    def record_price_history(tenant_id, product_id, supplier_id, price, order_id=None):
        """记录采购价格历史"""
        db.session.add(PurchasePriceHistory(
            organizacion_id=tenant_id,
            producto_id=product_id,
            proveedor_id=supplier_id,
            orden_id=order_id,
            precio=price,
        ))

    @staticmethod
    def get_supplier_price(tenant_id, product_id, supplier_id):
        """获取最近采购价格，没有历史时返回商品成本"""
        history = (PurchasePriceHistory.query
                   .filter_by(organizacion_id=tenant_id, producto_id=product_id, proveedor_id=supplier_id)
                   .order_by(PurchasePriceHistory.fecha.desc(), PurchasePriceHistory.id.desc())
                   .first())
        if history:
            return history.precio
        product = Product.query.filter_by(organizacion_id=tenant_id, id=product_id).first()
        return (product.costo_unitario or 0.0) if product else 0.0
