import os


class Config:
    """Base configuration"""

    # Database (job definitions and run history)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/dumpkeeper.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Directories
    LOCAL_BACKUP_DIR = os.environ.get('LOCAL_BACKUP_DIR') or '/data/local_backups'
    WORK_DIR = os.environ.get('WORK_DIR') or '/data/work'
    LOCK_DIR = os.environ.get('LOCK_DIR') or '/data/locks'
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Run limits
    RUN_TIMEOUT_SECONDS = int(os.environ.get('RUN_TIMEOUT_SECONDS', 6 * 3600))
    SNAPSHOT_TIMEOUT_SECONDS = int(os.environ.get('SNAPSHOT_TIMEOUT_SECONDS', 4 * 3600))
    LOCK_LEASE_SECONDS = int(os.environ.get('LOCK_LEASE_SECONDS', 7 * 3600))
    LOCK_WAIT_SECONDS = float(os.environ.get('LOCK_WAIT_SECONDS', 0))

    # Naming window of artifact keys
    KEY_GRANULARITY_MINUTES = int(os.environ.get('KEY_GRANULARITY_MINUTES', 1))

    # Retries of transient disk/network errors
    RETRY_ATTEMPTS = int(os.environ.get('RETRY_ATTEMPTS', 3))
    RETRY_BASE_DELAY = float(os.environ.get('RETRY_BASE_DELAY', 0.5))

    # Remote tiers
    REMOTE_CONNECT_TIMEOUT = float(os.environ.get('REMOTE_CONNECT_TIMEOUT', 10))
    REMOTE_READ_TIMEOUT = float(os.environ.get('REMOTE_READ_TIMEOUT', 60))

    # Scheduler
    SCHEDULER_TIMEZONE = 'UTC'
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'
    RESUME_INTERVAL_MINUTES = int(os.environ.get('RESUME_INTERVAL_MINUTES', 30))


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "dumpkeeper.db")}'
    LOCAL_BACKUP_DIR = os.path.join(DATA_DIR, 'local_backups')
    WORK_DIR = os.path.join(DATA_DIR, 'work')
    LOCK_DIR = os.path.join(DATA_DIR, 'locks')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Test configuration (directories are overridden per test)"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SCHEDULER_ENABLED = False
    RETRY_ATTEMPTS = 1
    RETRY_BASE_DELAY = 0
    LOG_DIR = None


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
