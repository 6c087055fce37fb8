"""批量库存调整服务 - CSV 导入、校验、应用"""
import csv
from datetime import datetime
from io import StringIO
from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from kardex.extensions import db
from kardex.models.biz import Product, ProductVariant
from kardex.models.stock import MovementType, Location
from kardex.models.adjustment import BulkAdjustment, BulkAdjustmentItem
from kardex.exceptions import KardexException, NotFound, ValidationError, InvalidState
from kardex.utils.tenancy import tenant_transaction, tenant_session, lock_row
from .inventory_service import InventoryService
from .folio_service import FolioService

# CSV 列名 -> 明细原始字段
CSV_COLUMNS = {
    'sku': 'sku_csv',
    'codigo_barras': 'codigo_barras_csv',
    'cantidad': 'cantidad_csv',
    'motivo': 'motivo_csv',
    'ubicacion': 'ubicacion_csv',
}
_RAW_FIELDS = tuple(CSV_COLUMNS.values())


def _clean(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _parse_quantity(raw):
    """带符号的非零整数，否则返回 None"""
    raw = _clean(raw)
    if raw is None:
        return None
    try:
        quantity = int(raw)
    except ValueError:
        return None
    return quantity or None


class BulkAdjustmentService:
    """批量调整服务"""

    @staticmethod
    def parse_csv(file_content, encoding='utf-8-sig'):
        """
        解析 CSV 文件
        返回: [{'fila': 2, 'sku': ..., 'codigo_barras': ..., 'cantidad': ..., 'motivo': ..., 'ubicacion': ...}]
        """
        if isinstance(file_content, bytes):
            try:
                content = file_content.decode(encoding)
            except UnicodeDecodeError:
                content = file_content.decode(current_app.config['CSV_FALLBACK_ENCODING'])
        else:
            content = file_content

        reader = csv.DictReader(StringIO(content))
        headers = [(h or '').strip().lower() for h in (reader.fieldnames or [])]
        if 'cantidad' not in headers or not ({'sku', 'codigo_barras'} & set(headers)):
            raise ValidationError("CSV must have a 'cantidad' column and a 'sku' or 'codigo_barras' column",
                                  payload={'columnas': headers})

        rows = []
        for line, record in enumerate(reader, start=2):  # 第 1 行是表头
            row = {(k or '').strip().lower(): v for k, v in record.items()}
            values = {col: _clean(row.get(col)) for col in CSV_COLUMNS}
            if not any(values.values()):
                continue  # 跳过空行
            values['fila'] = line
            rows.append(values)
        return rows

    @staticmethod
    def create(tenant_id, rows, archivo_nombre=None, sucursal_id=None, user_id=None, motivo_general=None):
        """创建批量调整单 (只保存原始行，不解析)"""
        if not rows:
            raise ValidationError("The adjustment has no rows")
        max_rows = current_app.config['BULK_ADJUSTMENT_MAX_ROWS']
        if len(rows) > max_rows:
            raise ValidationError(f"Too many rows: {len(rows)} (max {max_rows})")

        with tenant_transaction(tenant_id):
            adjustment = BulkAdjustment(
                organizacion_id=tenant_id,
                folio=FolioService.next_folio(tenant_id, FolioService.BULK_ADJUSTMENT),
                sucursal_id=sucursal_id,
                archivo_nombre=archivo_nombre,
                motivo_general=motivo_general,
                estado=BulkAdjustment.STATUS_PENDING,
                total_filas=len(rows),
                filas_validas=0,
                filas_error=0,
                filas_aplicadas=0,
                valor_total=0.0,
                usuario_id=user_id,
            )
            for index, row in enumerate(rows, start=1):
                adjustment.items.append(BulkAdjustmentItem(
                    organizacion_id=tenant_id,
                    fila_numero=row.get('fila') or index,
                    estado=BulkAdjustmentItem.STATUS_PENDING,
                    **{field: _clean(row.get(col)) for col, field in CSV_COLUMNS.items()}
                ))
            db.session.add(adjustment)
            db.session.flush()
            current_app.logger.info(f"[ajuste] org={tenant_id} {adjustment.folio} creado con {len(rows)} filas")
            return adjustment

    @staticmethod
    def create_from_csv(tenant_id, file_content, archivo_nombre=None, sucursal_id=None, user_id=None,
                        motivo_general=None):
        rows = BulkAdjustmentService.parse_csv(file_content)
        return BulkAdjustmentService.create(tenant_id, rows, archivo_nombre=archivo_nombre, sucursal_id=sucursal_id,
                                            user_id=user_id, motivo_general=motivo_general)

    @staticmethod
    def _lock(tenant_id, adjustment_id):
        adjustment = lock_row(BulkAdjustment, tenant_id, id=adjustment_id)
        if adjustment is None:
            raise NotFound(f"Bulk adjustment {adjustment_id} not found")
        return adjustment

    @staticmethod
    def _resolve_codes(tenant_id, items):
        """
        一次查询解析所有 SKU / 条码
        返回: {code: [(producto, variante|None), ...]}
        """
        codes = {c for i in items for c in (i.sku_csv, i.codigo_barras_csv) if c}
        matches = {code: [] for code in codes}
        if not codes:
            return matches

        products = (Product.query
                    .filter(Product.organizacion_id == tenant_id, Product.activo.is_(True),
                            or_(Product.sku.in_(codes), Product.codigo_barras.in_(codes)))
                    .all())
        variants = (ProductVariant.query
                    .join(Product, Product.id == ProductVariant.producto_id)
                    .filter(ProductVariant.organizacion_id == tenant_id, ProductVariant.activo.is_(True),
                            Product.activo.is_(True),
                            or_(ProductVariant.sku.in_(codes), ProductVariant.codigo_barras.in_(codes)))
                    .all())
        for product in products:
            for code in {product.sku, product.codigo_barras} & codes:
                matches[code].append((product, None))
        for variant in variants:
            for code in {variant.sku, variant.codigo_barras} & codes:
                matches[code].append((variant.producto, variant))
        return matches

    @staticmethod
    def _resolve_locations(tenant_id, adjustment, items):
        codes = {i.ubicacion_csv for i in items if i.ubicacion_csv}
        if not codes:
            return {}
        query = Location.query.filter(Location.organizacion_id == tenant_id, Location.codigo.in_(codes))
        if adjustment.sucursal_id is not None:
            query = query.filter(Location.sucursal_id == adjustment.sucursal_id)
        found = {}
        for location in query.all():
            found.setdefault(location.codigo, []).append(location)
        # 未指定门店时，同一编码存在于多个门店视为无法解析
        return {code: locs[0] for code, locs in found.items() if len(locs) == 1}

    @staticmethod
    def _reset_item(item):
        item.estado = BulkAdjustmentItem.STATUS_PENDING
        item.error_tipo = None
        item.error_mensaje = None
        item.producto_id = None
        item.variante_id = None
        item.ubicacion_id = None
        item.cantidad_ajuste = None
        item.stock_antes = None
        item.stock_despues = None
        item.costo_unitario = None
        item.valor_ajuste = None

    @staticmethod
    def _validate_item(item, matches, locations, projected, projected_variant):
        quantity = _parse_quantity(item.cantidad_csv)
        if quantity is None:
            item.mark_error(BulkAdjustmentItem.ERROR_INVALID_QTY,
                            f"Invalid quantity '{item.cantidad_csv}': must be a non-zero integer")
            return

        candidates = []
        for code in (item.sku_csv, item.codigo_barras_csv):
            for match in matches.get(code, []) if code else []:
                key = (match[0].id, match[1].id if match[1] else None)
                if key not in [(p.id, v.id if v else None) for p, v in candidates]:
                    candidates.append(match)
        if not candidates:
            item.mark_error(BulkAdjustmentItem.ERROR_PRODUCT_NOT_FOUND,
                            f"No product with SKU '{item.sku_csv or '-'}' or barcode '{item.codigo_barras_csv or '-'}'")
            return
        if len(candidates) > 1:
            item.mark_error(BulkAdjustmentItem.ERROR_PRODUCT_AMBIGUOUS,
                            f"Code matches {len(candidates)} products or variants")
            return
        product, variant = candidates[0]

        location = None
        if item.ubicacion_csv:
            location = locations.get(item.ubicacion_csv)
            if location is None:
                item.mark_error(BulkAdjustmentItem.ERROR_LOCATION_NOT_FOUND,
                                f"Location '{item.ubicacion_csv}' not found")
                return

        # 同一商品多行时按累计后的预计库存校验
        before = projected.setdefault(product.id, product.stock_actual or 0)
        after = before + quantity
        if variant is not None:
            variant_before = projected_variant.setdefault(variant.id, variant.stock_actual or 0)
            if variant_before + quantity < 0:
                item.mark_error(BulkAdjustmentItem.ERROR_INSUFFICIENT_STOCK,
                                f"Insufficient stock: variant has {variant_before}, adjustment {quantity}")
                return
        if after < 0:
            item.mark_error(BulkAdjustmentItem.ERROR_INSUFFICIENT_STOCK,
                            f"Insufficient stock: have {before}, adjustment {quantity}, result {after}")
            return

        projected[product.id] = after
        if variant is not None:
            projected_variant[variant.id] += quantity

        cost = variant.costo_efectivo if variant is not None else (product.costo_unitario or 0.0)
        item.producto_id = product.id
        item.variante_id = variant.id if variant is not None else None
        item.ubicacion_id = location.id if location is not None else None
        item.cantidad_ajuste = quantity
        item.stock_antes = before
        item.stock_despues = after
        item.costo_unitario = cost
        item.valor_ajuste = round(quantity * cost, 2)
        item.estado = BulkAdjustmentItem.STATUS_VALID

    @staticmethod
    def _refresh_counters(adjustment):
        items = adjustment.items
        adjustment.total_filas = len(items)
        adjustment.filas_validas = sum(1 for i in items if i.estado == BulkAdjustmentItem.STATUS_VALID)
        adjustment.filas_error = sum(1 for i in items if i.estado == BulkAdjustmentItem.STATUS_ERROR)
        adjustment.filas_aplicadas = sum(1 for i in items if i.estado == BulkAdjustmentItem.STATUS_APPLIED)
        adjustment.valor_total = round(sum(i.valor_ajuste or 0 for i in items
                                           if i.estado in (BulkAdjustmentItem.STATUS_VALID,
                                                           BulkAdjustmentItem.STATUS_APPLIED)), 2)

    @staticmethod
    def validate(tenant_id, adjustment_id):
        """校验所有未应用的行；至少一行有效时进入 validado"""
        with tenant_transaction(tenant_id):
            adjustment = BulkAdjustmentService._lock(tenant_id, adjustment_id)
            if adjustment.estado != BulkAdjustment.STATUS_PENDING:
                raise InvalidState(f"Only pending adjustments can be validated (current: {adjustment.estado})")

            items = [i for i in adjustment.items if i.estado != BulkAdjustmentItem.STATUS_APPLIED]
            for item in items:
                BulkAdjustmentService._reset_item(item)

            matches = BulkAdjustmentService._resolve_codes(tenant_id, items)
            locations = BulkAdjustmentService._resolve_locations(tenant_id, adjustment, items)
            projected, projected_variant = {}, {}
            for item in items:
                try:
                    BulkAdjustmentService._validate_item(item, matches, locations, projected, projected_variant)
                except KardexException as e:
                    item.mark_error(BulkAdjustmentItem.ERROR_VALIDATION, e.message)

            BulkAdjustmentService._refresh_counters(adjustment)
            adjustment.estado = (BulkAdjustment.STATUS_VALIDATED if adjustment.filas_validas
                                 else BulkAdjustment.STATUS_PENDING)
            adjustment.validado_en = datetime.utcnow()
            current_app.logger.info(
                f"[ajuste] org={tenant_id} {adjustment.folio} validado: "
                f"{adjustment.filas_validas} válidas, {adjustment.filas_error} con error -> {adjustment.estado}"
            )
            return adjustment

    @staticmethod
    def correct_item(tenant_id, item_id, data):
        """修改原始值，行与单据都回到 pendiente 等待重新校验"""
        with tenant_transaction(tenant_id):
            item = lock_row(BulkAdjustmentItem, tenant_id, id=item_id)
            if item is None:
                raise NotFound(f"Adjustment row {item_id} not found")
            adjustment = BulkAdjustmentService._lock(tenant_id, item.ajuste_id)
            if adjustment.estado == BulkAdjustment.STATUS_APPLIED:
                raise InvalidState("The adjustment is already applied")
            if item.estado == BulkAdjustmentItem.STATUS_APPLIED:
                raise InvalidState("Applied rows cannot be edited")

            fields = [f for f in _RAW_FIELDS if f in data]
            if not fields:
                raise ValidationError("No fields to update")
            for field in fields:
                setattr(item, field, _clean(data[field]))
            BulkAdjustmentService._reset_item(item)
            adjustment.estado = BulkAdjustment.STATUS_PENDING
            BulkAdjustmentService._refresh_counters(adjustment)
            return item

    @staticmethod
    def apply(tenant_id, adjustment_id, user_id=None):
        """
        应用有效行：每行独立 savepoint，失败行标记 error_aplicacion
        返回: {'ajuste', 'aplicados', 'errores'}
        """
        with tenant_transaction(tenant_id):
            adjustment = BulkAdjustmentService._lock(tenant_id, adjustment_id)
            if adjustment.estado != BulkAdjustment.STATUS_VALIDATED:
                raise InvalidState(f"Only validated adjustments can be applied (current: {adjustment.estado})")

            applied = []
            valid_items = [i for i in adjustment.items if i.estado == BulkAdjustmentItem.STATUS_VALID]
            for item in valid_items:
                savepoint = db.session.begin_nested()
                try:
                    movement = InventoryService.apply_movement(
                        tenant_id, item.producto_id, MovementType.adjustment_for(item.cantidad_ajuste),
                        abs(item.cantidad_ajuste),
                        variant_id=item.variante_id,
                        location_id=item.ubicacion_id,
                        unit_cost=item.costo_unitario,
                        user_id=user_id,
                        adjustment_id=adjustment.id,
                        reference=f"Ajuste masivo: {adjustment.folio}",
                        reason=item.motivo_csv or adjustment.motivo_general or 'Ajuste masivo CSV',
                        allow_correction=True,
                    )
                    item.estado = BulkAdjustmentItem.STATUS_APPLIED
                    item.movimiento_id = movement.id
                    item.stock_antes = movement.stock_antes
                    item.stock_despues = movement.stock_despues
                    db.session.flush()
                    savepoint.commit()
                    applied.append({'fila': item.fila_numero, 'producto_id': item.producto_id,
                                    'cantidad': item.cantidad_ajuste, 'movimiento_id': movement.id})
                except (KardexException, SQLAlchemyError) as e:
                    savepoint.rollback()
                    item.mark_error(BulkAdjustmentItem.ERROR_APPLY, getattr(e, 'message', str(e)))
                    current_app.logger.warning(
                        f"[ajuste] org={tenant_id} {adjustment.folio} fila {item.fila_numero}: {item.error_mensaje}"
                    )

            BulkAdjustmentService._refresh_counters(adjustment)
            failed = [i for i in adjustment.items if i.estado == BulkAdjustmentItem.STATUS_ERROR]
            adjustment.estado = BulkAdjustment.STATUS_WITH_ERRORS if failed else BulkAdjustment.STATUS_APPLIED
            adjustment.aplicado_en = datetime.utcnow()
            current_app.logger.info(
                f"[ajuste] org={tenant_id} {adjustment.folio} aplicado: {len(applied)} filas, "
                f"{len(failed)} con error -> {adjustment.estado}"
            )
            errors = [{'fila': i.fila_numero, 'error_tipo': i.error_tipo, 'mensaje': i.error_mensaje}
                      for i in failed]
            return {'ajuste': adjustment, 'aplicados': applied, 'errores': errors}

    @staticmethod
    def cancel(tenant_id, adjustment_id):
        """删除未应用的调整单 (连同明细)；已有行写入流水后不可删除"""
        with tenant_transaction(tenant_id):
            adjustment = BulkAdjustmentService._lock(tenant_id, adjustment_id)
            applied_rows = any(i.estado == BulkAdjustmentItem.STATUS_APPLIED for i in adjustment.items)
            if (adjustment.estado in (BulkAdjustment.STATUS_APPLIED, BulkAdjustment.STATUS_WITH_ERRORS)
                    or adjustment.aplicado_en is not None or applied_rows):
                raise InvalidState(f"Adjustment {adjustment.folio} has already been applied")
            db.session.delete(adjustment)

    @staticmethod
    def get_adjustment(tenant_id, adjustment_id):
        with tenant_session(tenant_id):
            adjustment = BulkAdjustment.query.filter_by(organizacion_id=tenant_id, id=adjustment_id).first()
            if adjustment is None:
                raise NotFound(f"Bulk adjustment {adjustment_id} not found")
            return adjustment

    @staticmethod
    def list_adjustments(tenant_id, estado=None, sucursal_id=None, limit=50, offset=0):
        with tenant_session(tenant_id):
            query = BulkAdjustment.query.filter_by(organizacion_id=tenant_id)
            if estado:
                query = query.filter_by(estado=estado)
            if sucursal_id is not None:
                query = query.filter_by(sucursal_id=sucursal_id)
            total = query.count()
            rows = query.order_by(BulkAdjustment.created_at.desc()).limit(limit).offset(offset).all()
            return {'ajustes': rows, 'total': total, 'limit': limit, 'offset': offset}
