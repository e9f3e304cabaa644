"""Akses database dengan percobaan ulang untuk error sementara."""

import functools
import logging
import time

from flask import current_app
from sqlalchemy.exc import OperationalError

from .errors import UpstreamError
from .models import db

logger = logging.getLogger(__name__)


def transient_retry(fn):
    """Ulangi ``fn`` saat database error sementara (koneksi putus, lock).

    Session di-rollback di antara percobaan, jadi ``fn`` harus berupa satu
    unit kerja utuh yang aman diulang dari awal.
    """
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        attempts = current_app.config.get('STORE_RETRY_COUNT', 3)
        backoff = current_app.config.get('STORE_RETRY_BACKOFF', 0.2)
        for attempt in range(1, attempts + 1):
            try:
                return fn(*args, **kwargs)
            except OperationalError as e:
                db.session.rollback()
                if attempt == attempts:
                    logger.error('%s gagal setelah %d percobaan: %s', fn.__name__, attempts, e)
                    raise UpstreamError() from e
                delay = backoff * (2 ** (attempt - 1))
                logger.warning('%s error sementara (percobaan %d), ulang dalam %.2fs', fn.__name__, attempt, delay)
                time.sleep(delay)
    return wrapper
