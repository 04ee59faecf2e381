import os


def _env_int(name, default=None):
    value = os.environ.get(name)
    return int(value) if value not in (None, '') else default


def _env_bool(name, default='false'):
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes')


class Config:
    """Base configuration"""

    SECRET_KEY = os.environ.get('SECRET_KEY')

    # Database (backup history and APScheduler job store)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/dumpkeeper.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # API authentication (werkzeug hash of the bearer token)
    API_TOKEN_HASH = os.environ.get('API_TOKEN_HASH')

    # Backup target
    TARGET_ENGINE = os.environ.get('TARGET_ENGINE', 'postgresql')
    TARGET_HOST = (
        os.environ.get('TARGET_HOST')
        or os.environ.get('POSTGRES_HOST')
        or 'postgresql.default.svc.cluster.local'
    )
    TARGET_PORT = _env_int('TARGET_PORT', _env_int('POSTGRES_PORT'))
    TARGET_USER = os.environ.get('TARGET_USER') or os.environ.get('POSTGRES_USER')
    TARGET_DATABASE = os.environ.get('TARGET_DATABASE')

    # Artifacts
    BACKUP_DIR = os.environ.get('BACKUP_DIR') or '/backups/postgresql'
    BACKUP_PREFIX = os.environ.get('BACKUP_PREFIX')
    RETENTION_DAYS = _env_int('RETENTION_DAYS', 7)
    COMPRESSION_FORMAT = os.environ.get('COMPRESSION_FORMAT', 'gzip')

    # Credential lookup
    CREDENTIAL_NAME = os.environ.get('CREDENTIAL_NAME')
    CREDENTIAL_SOURCES = os.environ.get('CREDENTIAL_SOURCES', 'kubernetes,file')
    K8S_SECRET_NAME = os.environ.get('K8S_SECRET_NAME', 'postgresql-secret')
    K8S_NAMESPACE = os.environ.get('K8S_NAMESPACE')
    KUBECTL = os.environ.get('KUBECTL', 'kubectl')
    KUBECONFIG = os.environ.get('KUBECONFIG')
    SECRET_MOUNT_DIR = os.environ.get('SECRET_MOUNT_DIR', '/var/run/secrets/postgresql')
    AWS_SECRET_PREFIX = os.environ.get('AWS_SECRET_PREFIX', '')
    AWS_SECRET_JSON_KEY = os.environ.get('AWS_SECRET_JSON_KEY')
    AWS_REGION = os.environ.get('AWS_REGION', 'us-east-1')

    # Probe and dump
    PROBE_MODE = os.environ.get('PROBE_MODE', 'command')
    PROBE_COMMAND = os.environ.get('PROBE_COMMAND')
    PROBE_TIMEOUT = _env_int('PROBE_TIMEOUT', 10)
    DUMP_TRANSPORT = os.environ.get('DUMP_TRANSPORT', 'local')
    DUMP_COMMAND = os.environ.get('DUMP_COMMAND')
    DUMP_TIMEOUT = _env_int('DUMP_TIMEOUT', 6 * 3600)
    LOCK_STALE_AFTER = _env_int('LOCK_STALE_AFTER', 24 * 3600)

    # SSH transport
    SSH_HOST = os.environ.get('SSH_HOST')
    SSH_PORT = _env_int('SSH_PORT', 22)
    SSH_USER = os.environ.get('SSH_USER')
    SSH_KEY_PATH = os.environ.get('SSH_KEY_PATH')
    SSH_KNOWN_HOSTS = os.environ.get('SSH_KNOWN_HOSTS')

    # Scheduler
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', 'true')
    SCHEDULER_TIMEZONE = 'UTC'
    BACKUP_SCHEDULE = os.environ.get('BACKUP_SCHEDULE', '0 2 * * *')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or f'sqlite:///{os.path.join(DATA_DIR, "dumpkeeper.db")}'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    BACKUP_DIR = os.environ.get('BACKUP_DIR') or os.path.join(DATA_DIR, 'backups')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SCHEDULER_ENABLED = False
    LOG_DIR = None
    CREDENTIAL_SOURCES = 'file'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
