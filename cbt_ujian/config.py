import os
from dotenv import load_dotenv
load_dotenv()


class Config:
    SECRET_KEY = os.getenv('SECRET_KEY', 'rahasia123')
    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URL', 'sqlite:///cbt.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # Cache daftar agenda aktif (detik)
    AGENDA_CACHE_TTL = int(os.getenv('AGENDA_CACHE_TTL', 30))

    # Retry akses database untuk error sementara (koneksi putus, lock, dsb)
    STORE_RETRY_COUNT = int(os.getenv('STORE_RETRY_COUNT', 3))
    STORE_RETRY_BACKOFF = float(os.getenv('STORE_RETRY_BACKOFF', 0.2))

    # Percobaan ulang update jawaban gabungan saat versi bentrok
    GABUNGAN_CAS_RETRY = int(os.getenv('GABUNGAN_CAS_RETRY', 5))

    ADMIN_USERNAME = os.getenv('ADMIN_USERNAME', 'admin')
    ADMIN_PASSWORD = os.getenv('ADMIN_PASSWORD', 'admin123')

    PORT = int(os.getenv('PORT', 5000))
    WAITRESS_THREADS = int(os.getenv('WAITRESS_THREADS', 16))
