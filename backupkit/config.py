import os


def _env_list(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return tuple(item.strip() for item in value.split(',') if item.strip())


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Base configuration"""

    DEBUG = False

    # Backup definition (databases, files, destinations)
    BACKUP_DEFINITION = os.environ.get('BACKUP_DEFINITION') or '/data/backup.json'

    # Temporary workspace and logs
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/backup-temp'
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Archive
    FILENAME_PREFIX = os.environ.get('FILENAME_PREFIX', '')
    ARCHIVE_FORMAT = os.environ.get('ARCHIVE_FORMAT') or 'zip'
    DATABASE_DUMP_COMPRESSOR = os.environ.get('DATABASE_DUMP_COMPRESSOR', 'gzip') or None

    # Dump filtering
    PRIMARY_CONNECTION = os.environ.get('PRIMARY_CONNECTION') or 'mysql'
    LOG_CONNECTIONS = _env_list('LOG_CONNECTIONS', ('mysql_dump_only_logs',))
    WITHOUT_LOGS_CONNECTIONS = _env_list('WITHOUT_LOGS_CONNECTIONS', ('mysql_dump_without_logs',))
    # Deleting backed-up log rows is destructive; keep it off unless explicitly requested
    PURGE_LOG_ROWS = _env_bool('PURGE_LOG_ROWS', False)

    # Sanitized dumps
    SANITIZE_BINARY_PATH = os.environ.get('SANITIZE_BINARY_PATH') or 'vendor/bin'
    SANITIZE_REPLACEMENTS_FILE = os.environ.get('SANITIZE_REPLACEMENTS_FILE') or 'dump_sanitized.json'

    # Replication
    DESTINATION_WORKERS = int(os.environ.get('DESTINATION_WORKERS', 3))

    # Credentials stored encrypted in the backup definition
    MASTER_PASSWORD = os.environ.get('MASTER_PASSWORD')
    MASTER_SALT = os.environ.get('MASTER_SALT')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    BACKUP_DEFINITION = os.path.join(DATA_DIR, 'backup.json')
    TEMP_DIR = os.path.join(DATA_DIR, 'backup-temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class TestingConfig(DevelopmentConfig):
    """Testing configuration"""
    PURGE_LOG_ROWS = False
    DESTINATION_WORKERS = 2


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}
