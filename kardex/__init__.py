import logging
import colorlog
from flask import Flask
from config import config
from kardex.extensions import db, migrate, enable_sqlite_savepoints

# 导入 commands 模块，用于注册 CLI 命令
from kardex import commands


def create_app(config_name='default'):
    """KARDEX 应用工厂函数"""
    app = Flask(__name__)

    # 1. 加载配置
    app.config.from_object(config[config_name])
    config[config_name].init_app(app)

    # 2. 初始化扩展
    db.init_app(app)
    migrate.init_app(app, db)

    # 注册全部模型，保证 create_all / 迁移能看到所有表
    from kardex import models  # noqa: F401

    # 3. SQLite 需要接管事务控制才能使用 savepoint
    if app.config['SQLALCHEMY_DATABASE_URI'].startswith('sqlite'):
        with app.app_context():
            enable_sqlite_savepoints(db.engine)

    # 4. 配置日志
    configure_logging(app)

    # 5. 注册 CLI 命令
    register_commands(app)

    return app


def register_commands(app):
    """注册 Flask CLI 命令"""
    app.cli.add_command(commands.status)
    app.cli.add_command(commands.forge)
    app.cli.add_command(commands.expire_reservations)
    app.cli.add_command(commands.reconcile_stock)


def configure_logging(app):
    """配置彩色控制台日志，级别由 LOG_LEVEL 决定"""
    level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)

    handler = logging.StreamHandler()
    handler.setLevel(level)

    formatter = colorlog.ColoredFormatter(
        "%(log_color)s[%(asctime)s] %(levelname)-8s%(reset)s %(blue)s%(message)s",
        datefmt="%H:%M:%S",
        reset=True,
        log_colors={
            'DEBUG':    'cyan',
            'INFO':     'green',
            'WARNING':  'yellow',
            'ERROR':    'red',
            'CRITICAL': 'red,bg_white',
        },
        style='%'
    )
    handler.setFormatter(formatter)
    app.logger.addHandler(handler)
    app.logger.setLevel(level)
