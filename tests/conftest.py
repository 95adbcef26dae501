import os

# Must be set before queuematic.config is imported.
os.environ.setdefault('DATABASE_URL', 'sqlite://')
os.environ.setdefault('LOG_LEVEL', 'WARNING')
