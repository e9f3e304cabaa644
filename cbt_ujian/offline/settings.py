import os
from dotenv import load_dotenv
load_dotenv()


class OfflineSettings:
    BASE_URL = os.getenv('CBT_BASE_URL', 'http://localhost:5000')
    DATA_DIR = os.getenv('CBT_DATA_DIR', os.path.join(os.path.expanduser('~'), '.cbt_ujian'))

    # Jaringan diasumsikan sering gagal: timeout pendek, langsung jatuh ke cache
    CONNECT_TIMEOUT = float(os.getenv('CBT_CONNECT_TIMEOUT', 3))
    READ_TIMEOUT = float(os.getenv('CBT_READ_TIMEOUT', 5))
    PACKAGE_READ_TIMEOUT = float(os.getenv('CBT_PACKAGE_READ_TIMEOUT', 9))

    IMAGE_BUDGET_BYTES = int(os.getenv('CBT_IMAGE_BUDGET_BYTES', 50 * 1024 * 1024))

    SYNC_MAX_RETRIES = int(os.getenv('CBT_SYNC_MAX_RETRIES', 5))
    SYNC_BACKOFF_BASE = float(os.getenv('CBT_SYNC_BACKOFF_BASE', 2.0))
    SYNC_POLL_INTERVAL = float(os.getenv('CBT_SYNC_POLL_INTERVAL', 15))

    def __init__(self, **overrides):
        for key, value in overrides.items():
            key = key.upper()
            if not hasattr(type(self), key):
                raise AttributeError(f'Setting tidak dikenal: {key}')
            setattr(self, key, value)

    @property
    def timeout(self):
        return (self.CONNECT_TIMEOUT, self.READ_TIMEOUT)
