from datetime import datetime
from flask import current_app
from sqlalchemy.exc import IntegrityError
from kardex.extensions import db
from kardex.models.sys import FolioSequence
from kardex.exceptions import ValidationError
from kardex.utils.tenancy import tenant_transaction, lock_row


class FolioService:
    """单据号生成：PREFIX-YYYYMMDD-NNNN，每个租户/类型/日期独立递增"""

    ORDER = 'orden_compra'
    COUNT = 'conteo'
    BULK_ADJUSTMENT = 'ajuste_masivo'

    @staticmethod
    def next_folio(tenant_id, doc_type, today=None):
        prefix = current_app.config['FOLIO_PREFIXES'].get(doc_type)
        if not prefix:
            raise ValidationError(f"Unknown document type: {doc_type}")
        today = today or datetime.utcnow().date()

        with tenant_transaction(tenant_id):
            seq = lock_row(FolioSequence, tenant_id, tipo_documento=doc_type, fecha=today)
            if seq is None:
                # 首次使用：在 savepoint 中创建计数器，并发冲突时回退并重新加锁读取
                savepoint = db.session.begin_nested()
                try:
                    seq = FolioSequence(organizacion_id=tenant_id, tipo_documento=doc_type,
                                        fecha=today, ultimo_numero=0)
                    db.session.add(seq)
                    db.session.flush()
                    savepoint.commit()
                except IntegrityError:
                    savepoint.rollback()
                    current_app.logger.debug(f"Folio counter race on {doc_type}/{today}, retrying")
                    seq = lock_row(FolioSequence, tenant_id, tipo_documento=doc_type, fecha=today)

            seq.ultimo_numero += 1
            number = seq.ultimo_numero
            db.session.flush()

        return f"{prefix}-{today:%Y%m%d}-{number:04d}"
