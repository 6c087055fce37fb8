import os
from dotenv import load_dotenv

# 加载 .env 环境变量
load_dotenv()
basedir = os.path.abspath(os.path.dirname(__file__))

class Config:
    """基础配置类"""
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'hard-to-guess-string'

    # 数据库配置
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_RECORD_QUERIES = True

    # 日志级别
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # 库存预留 (购物车占用) 默认有效期，单位分钟
    RESERVATION_TTL_MINUTES = int(os.environ.get('RESERVATION_TTL_MINUTES', 15))

    # 随机盘点默认抽样数量
    COUNT_RANDOM_SAMPLE = int(os.environ.get('COUNT_RANDOM_SAMPLE', 50))

    # 批量调整 CSV 最大行数
    BULK_ADJUSTMENT_MAX_ROWS = int(os.environ.get('BULK_ADJUSTMENT_MAX_ROWS', 5000))
    # CSV 解码失败时的回退编码 (Excel 导出的西语文件多为 latin-1)
    CSV_FALLBACK_ENCODING = os.environ.get('CSV_FALLBACK_ENCODING', 'latin-1')

    # 单据号前缀 (按单据类型)
    FOLIO_PREFIXES = {
        'orden_compra': 'OC',
        'conteo': 'CNT',
        'ajuste_masivo': 'AJM',
    }

    @staticmethod
    def init_app(app):
        # 确保 SQLite 实例目录存在
        instance_dir = os.path.join(basedir, 'instance')
        if not os.path.exists(instance_dir):
            os.makedirs(instance_dir)

class DevelopmentConfig(Config):
    """开发环境配置"""
    DEBUG = True
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'sqlite:///' + os.path.join(basedir, 'instance', 'kardex.db')

class ProductionConfig(Config):
    """生产环境配置"""
    DEBUG = False

    DATABASE_URL = os.environ.get('DATABASE_URL') or \
        'sqlite:///' + os.path.join(basedir, 'instance', 'kardex_prod.db')
    # PostgreSQL URL 修正（部分平台使用 postgres://）
    if DATABASE_URL and DATABASE_URL.startswith('postgres://'):
        DATABASE_URL = DATABASE_URL.replace('postgres://', 'postgresql://', 1)

    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,
    }

    @classmethod
    def init_app(cls, app):
        Config.init_app(app)

class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    LOG_LEVEL = 'WARNING'
    RESERVATION_TTL_MINUTES = 15
    COUNT_RANDOM_SAMPLE = 3

config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
