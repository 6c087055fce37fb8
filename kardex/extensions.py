from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from sqlalchemy import event

# 初始化扩展对象 (暂不绑定 app)
db = SQLAlchemy()
migrate = Migrate()


def enable_sqlite_savepoints(engine):
    """
    pysqlite 默认不在 SAVEPOINT 前发出 BEGIN，
    接管事务控制后 begin_nested 才能按预期回滚。
    """
    @event.listens_for(engine, 'connect')
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _do_begin(conn):
        conn.exec_driver_sql('BEGIN')
