"""仓库货位 (WMS) 服务"""
from flask import current_app
from sqlalchemy import func
from kardex.extensions import db
from kardex.models.biz import Product
from kardex.models.stock import Location, LocationStock, MovementType
from kardex.exceptions import (
    NotFound, ValidationError, InvalidState,
    InsufficientStock, InsufficientLocationStock,
)
from kardex.utils.tenancy import tenant_transaction, tenant_session, lock_row
from .inventory_service import InventoryService, lock_location_stock, located_quantity

_EDITABLE_FIELDS = (
    'nombre', 'descripcion', 'capacidad_maxima', 'es_picking', 'es_recepcion', 'es_despacho',
    'es_cuarentena', 'es_devolucion', 'activo', 'bloqueada', 'orden',
)


class LocationService:

    @staticmethod
    def _get(tenant_id, location_id, lock=False):
        if lock:
            location = lock_row(Location, tenant_id, id=location_id)
        else:
            location = Location.query.filter_by(organizacion_id=tenant_id, id=location_id).first()
        if location is None:
            raise NotFound(f"Location {location_id} not found")
        return location

    @staticmethod
    def _check_parent(tenant_id, sucursal_id, tipo, parent_id):
        """子货位必须同一门店且层级更深"""
        if parent_id is None:
            return
        parent = LocationService._get(tenant_id, parent_id)
        if parent.sucursal_id != sucursal_id:
            raise ValidationError("Parent location belongs to another branch")
        if Location.TYPE_LEVELS[tipo] <= Location.TYPE_LEVELS[parent.tipo]:
            raise ValidationError(f"A '{tipo}' cannot be placed under a '{parent.tipo}'")

    @staticmethod
    def create_location(tenant_id, data):
        for field in ('sucursal_id', 'codigo', 'tipo'):
            if data.get(field) in (None, ''):
                raise ValidationError(f"Field '{field}' is required")
        tipo = data['tipo']
        if tipo not in Location.TYPE_LEVELS:
            raise ValidationError(f"Unknown location type: {tipo}")

        with tenant_transaction(tenant_id):
            LocationService._check_parent(tenant_id, data['sucursal_id'], tipo, data.get('parent_id'))
            exists = Location.query.filter_by(organizacion_id=tenant_id, sucursal_id=data['sucursal_id'],
                                              codigo=data['codigo']).first()
            if exists:
                raise ValidationError(f"Location code {data['codigo']} already exists in this branch")

            location = Location(
                organizacion_id=tenant_id,
                sucursal_id=data['sucursal_id'],
                parent_id=data.get('parent_id'),
                codigo=data['codigo'],
                tipo=tipo,
                capacidad_ocupada=0,
                **{k: data[k] for k in _EDITABLE_FIELDS if k in data}
            )
            db.session.add(location)
            db.session.flush()
            return location

    @staticmethod
    def update_location(tenant_id, location_id, data):
        with tenant_transaction(tenant_id):
            location = LocationService._get(tenant_id, location_id, lock=True)
            if 'parent_id' in data and data['parent_id'] != location.parent_id:
                if data['parent_id'] == location.id:
                    raise ValidationError("A location cannot be its own parent")
                LocationService._check_parent(tenant_id, location.sucursal_id, location.tipo, data['parent_id'])
                location.parent_id = data['parent_id']
            if data.get('capacidad_maxima') is not None and data['capacidad_maxima'] < (location.capacidad_ocupada or 0):
                raise ValidationError("Capacity cannot be lower than the occupied quantity")
            for key in _EDITABLE_FIELDS:
                if key in data:
                    setattr(location, key, data[key])
            return location

    @staticmethod
    def delete_location(tenant_id, location_id):
        """只能删除没有子货位且没有库存的货位"""
        with tenant_transaction(tenant_id):
            location = LocationService._get(tenant_id, location_id, lock=True)
            if Location.query.filter_by(parent_id=location.id).count():
                raise InvalidState("Location has child locations")
            stock = (db.session.query(func.coalesce(func.sum(LocationStock.cantidad), 0))
                     .filter(LocationStock.ubicacion_id == location.id).scalar())
            if stock > 0:
                raise InvalidState("Location still holds stock")
            LocationStock.query.filter_by(ubicacion_id=location.id).delete()
            db.session.delete(location)

    @staticmethod
    def get_location(tenant_id, location_id):
        with tenant_session(tenant_id):
            return LocationService._get(tenant_id, location_id)

    @staticmethod
    def list_locations(tenant_id, sucursal_id=None, tipo=None, parent_id=None, activo=None, search=None):
        with tenant_session(tenant_id):
            query = Location.query.filter_by(organizacion_id=tenant_id)
            if sucursal_id is not None:
                query = query.filter_by(sucursal_id=sucursal_id)
            if tipo:
                query = query.filter_by(tipo=tipo)
            if parent_id is not None:
                query = query.filter_by(parent_id=parent_id)
            if activo is not None:
                query = query.filter_by(activo=activo)
            if search:
                like = f'%{search}%'
                query = query.filter(Location.codigo.ilike(like) | Location.nombre.ilike(like))
            return query.order_by(Location.orden, Location.codigo).all()

    @staticmethod
    def get_tree(tenant_id, sucursal_id):
        """门店货位树：[{...location, 'hijos': [...]}]"""
        with tenant_session(tenant_id):
            locations = (Location.query
                         .filter_by(organizacion_id=tenant_id, sucursal_id=sucursal_id)
                         .order_by(Location.orden, Location.codigo).all())
            nodes = {loc.id: dict(loc.to_dict(), hijos=[]) for loc in locations}
            roots = []
            for loc in locations:
                node = nodes[loc.id]
                if loc.parent_id in nodes:
                    nodes[loc.parent_id]['hijos'].append(node)
                else:
                    roots.append(node)
            return roots

    @staticmethod
    def get_ancestors(tenant_id, location_id):
        """从根到直接父级"""
        with tenant_session(tenant_id):
            location = LocationService._get(tenant_id, location_id)
            chain = []
            seen = {location.id}
            while location.parent_id is not None and location.parent_id not in seen:
                location = LocationService._get(tenant_id, location.parent_id)
                seen.add(location.id)
                chain.append(location)
            chain.reverse()
            return chain

    @staticmethod
    def get_descendants(tenant_id, location_id):
        with tenant_session(tenant_id):
            root = LocationService._get(tenant_id, location_id)
            result = []
            frontier = [root.id]
            while frontier:
                children = (Location.query
                            .filter(Location.organizacion_id == tenant_id, Location.parent_id.in_(frontier))
                            .order_by(Location.orden, Location.codigo).all())
                result.extend(children)
                frontier = [c.id for c in children]
            return result

    @staticmethod
    def add_stock(tenant_id, location_id, product_id, quantity, lot=None, expiry=None):
        """
        上架：把尚未分配货位的库存放入货位，不改变商品汇总库存
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Quantity must be a positive integer")

        with tenant_transaction(tenant_id):
            product = lock_row(Product, tenant_id, id=product_id)
            if product is None:
                raise NotFound(f"Product {product_id} not found")
            location = LocationService._get(tenant_id, location_id, lock=True)
            if location.bloqueada or not location.activo:
                raise InvalidState(f"Location {location.codigo} is blocked")

            located = located_quantity(tenant_id, product.id)
            if located + quantity > (product.stock_actual or 0):
                raise InsufficientStock(
                    "Located stock would exceed product stock",
                    payload={'producto_id': product.id, 'stock_actual': product.stock_actual,
                             'en_ubicaciones': located, 'solicitado': quantity},
                )
            if not location.puede_recibir(quantity):
                raise ValidationError(
                    f"Location {location.codigo} has no capacity for {quantity}",
                    payload={'capacidad_libre': location.capacidad_libre},
                )

            row = lock_location_stock(tenant_id, location.id, product.id, lot, create=True, expiry=expiry)
            row.cantidad += quantity
            if expiry and not row.fecha_vencimiento:
                row.fecha_vencimiento = expiry
            location.capacidad_ocupada = (location.capacidad_ocupada or 0) + quantity
            db.session.flush()
            return row

    @staticmethod
    def move_stock(tenant_id, product_id, source_id, target_id, quantity, lot=None, user_id=None, audit=False):
        """
        货位间移库
        audit=True 时通过 salida_transferencia / entrada_transferencia 两条流水完成
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Quantity must be a positive integer")
        if source_id == target_id:
            raise ValidationError("Source and target locations must differ")

        with tenant_transaction(tenant_id):
            if audit:
                reference = f"TRF {source_id}->{target_id}"
                out = InventoryService.apply_movement(
                    tenant_id, product_id, MovementType.SALIDA_TRANSFERENCIA, quantity,
                    location_id=source_id, lot=lot, user_id=user_id, reference=reference,
                )
                InventoryService.apply_movement(
                    tenant_id, product_id, MovementType.ENTRADA_TRANSFERENCIA, quantity,
                    location_id=target_id, lot=lot, user_id=user_id, reference=reference,
                    unit_cost=out.costo_unitario,
                )
                return True

            product = lock_row(Product, tenant_id, id=product_id)
            if product is None:
                raise NotFound(f"Product {product_id} not found")
            # 固定加锁顺序，避免两个方向的移库互相等待
            first, second = sorted((source_id, target_id))
            locked = {first: LocationService._get(tenant_id, first, lock=True),
                      second: LocationService._get(tenant_id, second, lock=True)}
            source, target = locked[source_id], locked[target_id]
            if target.bloqueada or not target.activo or source.bloqueada:
                raise InvalidState("Blocked location")
            if source.sucursal_id != target.sucursal_id:
                raise ValidationError("Locations belong to different branches")

            src_row = lock_location_stock(tenant_id, source.id, product.id, lot)
            if src_row is None or src_row.cantidad < quantity:
                raise InsufficientLocationStock(
                    f"Location {source.codigo} does not hold {quantity}",
                    payload={'ubicacion_id': source.id, 'disponible': src_row.cantidad if src_row else 0,
                             'solicitado': quantity},
                )
            if not target.puede_recibir(quantity):
                raise ValidationError(f"Location {target.codigo} has no capacity for {quantity}")

            dst_row = lock_location_stock(tenant_id, target.id, product.id, lot, create=True,
                                          expiry=src_row.fecha_vencimiento)
            src_row.cantidad -= quantity
            dst_row.cantidad += quantity
            source.capacidad_ocupada = max(0, (source.capacidad_ocupada or 0) - quantity)
            target.capacidad_ocupada = (target.capacidad_ocupada or 0) + quantity

            current_app.logger.info(
                f"[wms] org={tenant_id} producto={product.id} {quantity} {source.codigo} -> {target.codigo}"
            )
            return True

    @staticmethod
    def available_locations(tenant_id, sucursal_id, quantity=0):
        """可接收指定数量的货位 (启用、未锁定、容量足够)"""
        with tenant_session(tenant_id):
            locations = (Location.query
                         .filter_by(organizacion_id=tenant_id, sucursal_id=sucursal_id,
                                    activo=True, bloqueada=False)
                         .order_by(Location.orden, Location.codigo).all())
            return [loc for loc in locations if loc.puede_recibir(quantity)]

    @staticmethod
    def get_location_stock(tenant_id, location_id):
        with tenant_session(tenant_id):
            LocationService._get(tenant_id, location_id)
            return (LocationStock.query
                    .filter(LocationStock.organizacion_id == tenant_id,
                            LocationStock.ubicacion_id == location_id,
                            LocationStock.cantidad > 0)
                    .order_by(LocationStock.fecha_entrada.desc()).all())

    @staticmethod
    def get_product_locations(tenant_id, product_id):
        """商品所在货位，拣货位优先、先入库优先"""
        with tenant_session(tenant_id):
            return (LocationStock.query
                    .join(Location, Location.id == LocationStock.ubicacion_id)
                    .filter(LocationStock.organizacion_id == tenant_id,
                            LocationStock.producto_id == product_id,
                            LocationStock.cantidad > 0)
                    .order_by(Location.es_picking.desc(), LocationStock.fecha_entrada).all())

    @staticmethod
    def get_stats(tenant_id, sucursal_id):
        with tenant_session(tenant_id):
            locations = Location.query.filter_by(organizacion_id=tenant_id, sucursal_id=sucursal_id).all()
            por_tipo = {tipo: 0 for tipo in Location.TYPE_LEVELS}
            for loc in locations:
                por_tipo[loc.tipo] += 1
            capacity = sum(loc.capacidad_maxima or 0 for loc in locations)
            occupied = sum(loc.capacidad_ocupada or 0 for loc in locations)
            return {
                'total_ubicaciones': len(locations),
                'por_tipo': por_tipo,
                'bloqueadas': sum(1 for loc in locations if loc.bloqueada),
                'activas': sum(1 for loc in locations if loc.activo),
                'capacidad_total': capacity,
                'capacidad_ocupada': occupied,
                'ocupacion_porcentaje': round(occupied / capacity * 100, 1) if capacity else 0,
            }
