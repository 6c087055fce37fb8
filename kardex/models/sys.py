from kardex.extensions import db
from .base import TenantModel


class FolioSequence(TenantModel):
    """单据号计数器：(租户, 单据类型, 日期) -> 最后发放的序号"""
    __tablename__ = 'inv_folio_secuencias'
    __table_args__ = (
        db.UniqueConstraint('organizacion_id', 'tipo_documento', 'fecha', name='uq_folio_org_tipo_fecha'),
    )

    tipo_documento = db.Column(db.String(32), nullable=False)
    fecha = db.Column(db.Date, nullable=False)
    ultimo_numero = db.Column(db.Integer, default=0, nullable=False)
