"""
租户作用域的事务工具
所有写路径都在 tenant_transaction 内执行；内层同租户调用加入外层事务，
只有最外层负责 commit / rollback。
"""
from contextlib import contextmanager
from sqlalchemy import text
from kardex.extensions import db
from kardex.exceptions import Conflict

_TENANT_KEY = 'tenant_id'


def current_tenant():
    return db.session.info.get(_TENANT_KEY)


def _publish_tenant(session, tenant_id):
    """PostgreSQL 下把租户写入事务级 GUC，供行级安全策略使用"""
    if session.get_bind().dialect.name == 'postgresql':
        session.execute(
            text("SELECT set_config('app.current_tenant_id', :tid, true)"),
            {'tid': str(tenant_id)},
        )


@contextmanager
def tenant_session(tenant_id):
    """只读作用域：绑定租户但不结束事务"""
    session = db.session
    active = session.info.get(_TENANT_KEY)
    if active is not None:
        if active != tenant_id:
            raise Conflict(f"Session already bound to tenant {active}")
        yield session
        return

    session.info[_TENANT_KEY] = tenant_id
    try:
        _publish_tenant(session, tenant_id)
        yield session
    finally:
        session.info.pop(_TENANT_KEY, None)


@contextmanager
def tenant_transaction(tenant_id):
    """
    写事务作用域
    最外层：正常退出时 commit，异常时 rollback 并继续抛出。
    """
    session = db.session
    active = session.info.get(_TENANT_KEY)
    if active is not None:
        if active != tenant_id:
            raise Conflict(f"Session already bound to tenant {active}")
        yield session
        return

    session.info[_TENANT_KEY] = tenant_id
    try:
        _publish_tenant(session, tenant_id)
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.info.pop(_TENANT_KEY, None)


def lock_row(model, tenant_id, **filters):
    """SELECT ... FOR UPDATE 读取最新行 (不存在返回 None)"""
    return (model.query
            .filter_by(organizacion_id=tenant_id, **filters)
            .with_for_update()
            .populate_existing()
            .first())
