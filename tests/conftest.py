import os

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')
os.environ.setdefault('PERSISTENCE_ENABLED', 'false')
os.environ.setdefault('JWT_SECRET_KEY', 'test-secret')
