"""库存预留服务：预留只占用可用库存，确认后才写 salida_venta 流水"""
from datetime import datetime, timedelta
from flask import current_app
from sqlalchemy import func
from kardex.extensions import db
from kardex.models.biz import Product, ProductVariant
from kardex.models.stock import MovementType
from kardex.models.reservation import Reservation
from kardex.exceptions import NotFound, ValidationError, InvalidState, InsufficientAvailableStock
from kardex.utils.tenancy import tenant_transaction, tenant_session, lock_row
from .inventory_service import InventoryService


def _reserved_quantity(tenant_id, product_id, variant_id=None, now=None):
    """有效 (activa 且未过期) 预留合计"""
    now = now or datetime.utcnow()
    query = (db.session.query(func.coalesce(func.sum(Reservation.cantidad), 0))
             .filter(Reservation.organizacion_id == tenant_id,
                     Reservation.producto_id == product_id,
                     Reservation.estado == Reservation.STATUS_ACTIVE,
                     Reservation.expira_en > now))
    if variant_id is not None:
        query = query.filter(Reservation.variante_id == variant_id)
    return int(query.scalar() or 0)


class ReservationService:

    @staticmethod
    def _available(tenant_id, product, variant=None):
        if variant is not None:
            return (variant.stock_actual or 0) - _reserved_quantity(tenant_id, product.id, variant.id)
        return (product.stock_actual or 0) - _reserved_quantity(tenant_id, product.id)

    @staticmethod
    def available_stock(tenant_id, product_id, variant_id=None):
        """可用库存 = 实际库存 - 有效预留，每次实时计算"""
        with tenant_session(tenant_id):
            product = Product.query.filter_by(organizacion_id=tenant_id, id=product_id).first()
            if product is None:
                raise NotFound(f"Product {product_id} not found")
            variant = None
            if variant_id is not None:
                variant = ProductVariant.query.filter_by(organizacion_id=tenant_id, id=variant_id,
                                                         producto_id=product.id).first()
                if variant is None:
                    raise NotFound(f"Variant {variant_id} not found")
            return ReservationService._available(tenant_id, product, variant)

    @staticmethod
    def available_stock_many(tenant_id, product_ids):
        """{producto_id: {nombre, stock_actual, stock_disponible}}，只含启用商品"""
        if not product_ids:
            return {}
        with tenant_session(tenant_id):
            now = datetime.utcnow()
            reserved = dict(
                db.session.query(Reservation.producto_id, func.sum(Reservation.cantidad))
                .filter(Reservation.organizacion_id == tenant_id,
                        Reservation.producto_id.in_(product_ids),
                        Reservation.estado == Reservation.STATUS_ACTIVE,
                        Reservation.expira_en > now)
                .group_by(Reservation.producto_id).all()
            )
            products = (Product.query
                        .filter(Product.organizacion_id == tenant_id, Product.id.in_(product_ids),
                                Product.activo.is_(True)).all())
            return {
                p.id: {
                    'nombre': p.nombre,
                    'stock_actual': p.stock_actual,
                    'stock_disponible': (p.stock_actual or 0) - int(reserved.get(p.id) or 0),
                }
                for p in products
            }

    @staticmethod
    def check_availability(tenant_id, product_id, quantity, variant_id=None):
        available = ReservationService.available_stock(tenant_id, product_id, variant_id)
        return {
            'disponible': available,
            'suficiente': available >= quantity,
            'faltante': max(0, quantity - available),
        }

    @staticmethod
    def reserve(tenant_id, product_id, quantity, origin_type=None, origin_id=None, *,
                variant_id=None, sucursal_id=None, user_id=None, ttl_minutes=None):
        """
        创建预留
        加锁读取商品行后计算可用库存，保证并发预留不会超卖。
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Quantity must be a positive integer")
        ttl = ttl_minutes if ttl_minutes is not None else current_app.config['RESERVATION_TTL_MINUTES']
        if ttl <= 0:
            raise ValidationError("Reservation TTL must be positive")

        with tenant_transaction(tenant_id):
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

            available = ReservationService._available(tenant_id, product, variant)
            if available < quantity:
                raise InsufficientAvailableStock(
                    f"Only {available} available for {product.sku or product.id}, requested {quantity}",
                    payload={'producto_id': product.id, 'disponible': available, 'solicitado': quantity},
                )

            reservation = Reservation(
                organizacion_id=tenant_id,
                producto_id=product.id,
                variante_id=variant_id,
                sucursal_id=sucursal_id,
                cantidad=quantity,
                tipo_origen=origin_type,
                origen_id=origin_id,
                usuario_id=user_id,
                expira_en=datetime.utcnow() + timedelta(minutes=ttl),
                estado=Reservation.STATUS_ACTIVE,
            )
            db.session.add(reservation)
            db.session.flush()
            current_app.logger.debug(
                f"[reserva] org={tenant_id} producto={product.id} cantidad={quantity} id={reservation.id}"
            )
            return reservation

    @staticmethod
    def reserve_many(tenant_id, items, origin_type=None, origin_id=None, sucursal_id=None, user_id=None,
                     ttl_minutes=None):
        """
        整单预留 (购物车)：任意一项失败则全部回滚
        items: [{'producto_id', 'cantidad', 'variante_id'?}]
        """
        if not items:
            raise ValidationError("No items to reserve")
        # 按商品 id 排序加锁，避免交叉死锁
        ordered = sorted(items, key=lambda i: (i['producto_id'], i.get('variante_id') or 0))
        with tenant_transaction(tenant_id):
            created = []
            for item in ordered:
                created.append(ReservationService.reserve(
                    tenant_id, item['producto_id'], item['cantidad'], origin_type, origin_id,
                    variant_id=item.get('variante_id'), sucursal_id=sucursal_id, user_id=user_id,
                    ttl_minutes=ttl_minutes,
                ))
            return created

    @staticmethod
    def _lock(tenant_id, reservation_id):
        reservation = lock_row(Reservation, tenant_id, id=reservation_id)
        if reservation is None:
            raise NotFound(f"Reservation {reservation_id} not found")
        return reservation

    @staticmethod
    def confirm(tenant_id, reservation_id, sale_id=None, user_id=None):
        """确认预留：写 salida_venta 流水，预留进入 confirmada"""
        with tenant_transaction(tenant_id):
            reservation = ReservationService._lock(tenant_id, reservation_id)
            if not reservation.is_active:
                raise InvalidState(f"Reservation {reservation.id} is {reservation.estado}")
            if reservation.is_expired():
                raise InvalidState(f"Reservation {reservation.id} has expired")

            if sale_id is None and reservation.tipo_origen == 'venta':
                sale_id = reservation.origen_id
            movement = InventoryService.apply_movement(
                tenant_id, reservation.producto_id, MovementType.SALIDA_VENTA, reservation.cantidad,
                variant_id=reservation.variante_id,
                reservation_id=reservation.id,
                sale_id=sale_id,
                user_id=user_id or reservation.usuario_id,
                reference=f"RES-{reservation.id}",
            )
            reservation.estado = Reservation.STATUS_CONFIRMED
            reservation.movimiento_id = movement.id
            reservation.confirmada_en = datetime.utcnow()
            return reservation

    @staticmethod
    def confirm_many(tenant_id, reservation_ids, sale_id=None, user_id=None):
        with tenant_transaction(tenant_id):
            return [ReservationService.confirm(tenant_id, rid, sale_id=sale_id, user_id=user_id)
                    for rid in sorted(set(reservation_ids))]

    @staticmethod
    def cancel(tenant_id, reservation_id):
        with tenant_transaction(tenant_id):
            reservation = ReservationService._lock(tenant_id, reservation_id)
            if not reservation.is_active:
                raise InvalidState(f"Reservation {reservation.id} is {reservation.estado}")
            reservation.estado = Reservation.STATUS_CANCELLED
            reservation.cancelada_en = datetime.utcnow()
            return reservation

    @staticmethod
    def cancel_by_origin(tenant_id, origin_type, origin_id):
        """取消某个来源单据的全部有效预留，返回取消数量"""
        with tenant_transaction(tenant_id):
            reservations = (Reservation.query
                            .filter_by(organizacion_id=tenant_id, tipo_origen=origin_type,
                                       origen_id=origin_id, estado=Reservation.STATUS_ACTIVE)
                            .with_for_update().populate_existing().all())
            now = datetime.utcnow()
            for reservation in reservations:
                reservation.estado = Reservation.STATUS_CANCELLED
                reservation.cancelada_en = now
            return len(reservations)

    @staticmethod
    def extend(tenant_id, reservation_id, minutes):
        if not isinstance(minutes, int) or minutes <= 0:
            raise ValidationError("Minutes must be a positive integer")
        with tenant_transaction(tenant_id):
            reservation = ReservationService._lock(tenant_id, reservation_id)
            if not reservation.is_active:
                raise InvalidState(f"Reservation {reservation.id} is {reservation.estado}")
            reservation.expira_en = reservation.expira_en + timedelta(minutes=minutes)
            return reservation

    @staticmethod
    def expire_overdue(tenant_id=None):
        """
        清扫过期预留 (活跃且 expira_en <= now)
        tenant_id 为空时逐个租户处理，返回过期数量
        """
        if tenant_id is None:
            tenants = [row[0] for row in
                       db.session.query(Reservation.organizacion_id)
                       .filter(Reservation.estado == Reservation.STATUS_ACTIVE)
                       .distinct().all()]
            return sum(ReservationService.expire_overdue(t) for t in tenants)

        with tenant_transaction(tenant_id):
            expired = (Reservation.query
                       .filter(Reservation.organizacion_id == tenant_id,
                               Reservation.estado == Reservation.STATUS_ACTIVE,
                               Reservation.expira_en <= datetime.utcnow())
                       .update({Reservation.estado: Reservation.STATUS_EXPIRED},
                               synchronize_session='fetch'))
        if expired:
            current_app.logger.info(f"[reserva] org={tenant_id} {expired} reservations expired")
        return expired

    @staticmethod
    def get_reservation(tenant_id, reservation_id):
        with tenant_session(tenant_id):
            reservation = Reservation.query.filter_by(organizacion_id=tenant_id, id=reservation_id).first()
            if reservation is None:
                raise NotFound(f"Reservation {reservation_id} not found")
            return reservation

    @staticmethod
    def list_reservations(tenant_id, estado=None, product_id=None, origin_type=None, origin_id=None,
                          sucursal_id=None, limit=50, offset=0):
        with tenant_session(tenant_id):
            query = Reservation.query.filter_by(organizacion_id=tenant_id)
            if estado:
                query = query.filter_by(estado=estado)
            if product_id:
                query = query.filter_by(producto_id=product_id)
            if origin_type:
                query = query.filter_by(tipo_origen=origin_type)
            if origin_id is not None:
                query = query.filter_by(origen_id=origin_id)
            if sucursal_id is not None:
                query = query.filter_by(sucursal_id=sucursal_id)
            total = query.count()
            rows = query.order_by(Reservation.created_at.desc()).limit(limit).offset(offset).all()
            return {'reservas': rows, 'total': total, 'limit': limit, 'offset': offset}
