import threading
import time


class AgendaCache:
    """Cache baca-saja daftar agenda aktif dengan masa berlaku (TTL).

    Dimiliki oleh aplikasi (``app.extensions['agenda_cache']``), bukan
    variabel global modul.
    """

    def __init__(self, ttl, clock=time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._data = None
        self._expires_at = 0.0

    def get(self, loader):
        with self._lock:
            now = self._clock()
            if self._data is not None and now < self._expires_at:
                return self._data
        data = loader()
        with self._lock:
            self._data = data
            self._expires_at = self._clock() + self.ttl
        return data

    def invalidate(self):
        with self._lock:
            self._data = None
            self._expires_at = 0.0
