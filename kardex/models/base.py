from datetime import datetime, date
from kardex.extensions import db

class BaseModel(db.Model):
    """
    模型基类
    包含：ID主键, 创建时间, 更新时间, 序列化方法
    写操作统一由服务层在租户事务中提交，模型本身不提交。
    """
    __abstract__ = True

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        """
        通用序列化方法：将模型转换为字典。
        过滤掉以 '_' 开头的私有属性。
        """
        data = {}
        for c in self.__table__.columns:
            if c.name.startswith('_'):
                continue
            val = getattr(self, c.name)
            if isinstance(val, (datetime, date)):
                data[c.name] = val.isoformat()
            else:
                data[c.name] = val
        return data


class TenantModel(BaseModel):
    """租户 (organizacion) 隔离的业务表"""
    __abstract__ = True

    organizacion_id = db.Column(db.Integer, nullable=False, index=True)
