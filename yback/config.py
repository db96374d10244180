import os


class Config:
    """Base configuration"""

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/yback.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Artifacts and logs
    AUTO_BACKUP_DIR = os.environ.get('AUTO_BACKUP_DIR') or '/data/auto_backups'
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Scheduler
    SCHEDULER_ENABLED = True
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE', 'America/Sao_Paulo')
    SCHEDULER_MAX_WORKERS = int(os.environ.get('SCHEDULER_MAX_WORKERS', 5))
    SCHEDULER_MISFIRE_GRACE_TIME = 300  # seconds

    # Protocol clients
    SSH_CONNECT_TIMEOUT = 10  # seconds, also the idle read limit
    SSH_COMMAND_TIMEOUT = int(os.environ.get('SSH_COMMAND_TIMEOUT', 300))
    SSH_SETTLE_DELAY = float(os.environ.get('SSH_SETTLE_DELAY', 2))
    HTTP_TIMEOUT = 15
    TELNET_TIMEOUT = 15
    TELNET_COMMAND_PAUSE = float(os.environ.get('TELNET_COMMAND_PAUSE', 0.5))
    PING_COUNT = 3
    PING_TIMEOUT = 5


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "yback.db")}'
    AUTO_BACKUP_DIR = os.path.join(DATA_DIR, 'auto_backups')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Test configuration: in-memory database, no background scheduler"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SCHEDULER_ENABLED = False
    SSH_SETTLE_DELAY = 0
    TELNET_COMMAND_PAUSE = 0

    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    AUTO_BACKUP_DIR = os.path.join(BASE_DIR, 'data', 'test_backups')
    LOG_DIR = os.path.join(BASE_DIR, 'data', 'test_logs')


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
