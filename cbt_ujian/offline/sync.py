"""Antrean kiriman jawaban ke server.

Setiap save/finish ditulis dulu ke antrean di database lokal, baru
dikirim. Urutan kiriman dijaga per (peserta, mapel); entri yang gagal
terus-menerus tetap disimpan dengan status ``failed`` untuk diperiksa.
"""

import logging
import threading
import time

from .client import Cancelled, NetworkError, RejectedError
from .storage import QUEUE_FAILED, QUEUE_PENDING

logger = logging.getLogger(__name__)

TYPE_SAVE = 'save_jawaban'
TYPE_FINISH = 'selesai_ujian'


def queue_key(pid, mid):
    return f'{pid}:{mid}'


class CancelToken:

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self):
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise Cancelled()

    def wait(self, timeout):
        return self._event.wait(timeout)


class ConnectivityMonitor:
    """Cek koneksi berkala lewat ``ping()``; panggil ``on_change(online)`` saat status berubah."""

    def __init__(self, ping, interval=15, on_change=None):
        self.ping = ping
        self.interval = interval
        self.on_change = on_change
        self.online = None

    def check(self):
        try:
            online = bool(self.ping())
        except (NetworkError, RejectedError) as e:
            logger.debug('[KONEKSI] Ping gagal: %s', e)
            online = False

        changed = online != self.online
        self.online = online
        if changed:
            logger.info('[KONEKSI] %s', 'Online' if online else 'Offline')
            if self.on_change is not None:
                self.on_change(online)
        return online


class SyncEngine:

    def __init__(self, local_db, api, settings, clock=time.time):
        self.local_db = local_db
        self.api = api
        self.max_retries = settings.SYNC_MAX_RETRIES
        self.backoff_base = settings.SYNC_BACKOFF_BASE
        self.poll_interval = settings.SYNC_POLL_INTERVAL
        self.clock = clock

        self._drain_lock = threading.Lock()
        self._wake = threading.Event()
        self._cancel = None
        self._thread = None
        self._listeners = []
        self.monitor = ConnectivityMonitor(api.ping, self.poll_interval, self._connectivity_changed)

    def on_delivered(self, callback):
        """``callback(entry, response)`` dipanggil setelah server mengonfirmasi satu entri."""
        self._listeners.append(callback)

    # ==================== ANTREAN ====================
    def enqueue(self, type_, payload, temp_answers=None):
        key = queue_key(payload['pid'], payload['mid'])
        entry_id = self.local_db.enqueue(type_, key, payload, temp_answers=temp_answers)
        logger.debug('[SYNC] Antre #%s %s %s', entry_id, type_, key)
        return entry_id

    def pending_count(self):
        return self.local_db.count_queue(QUEUE_PENDING) + len([
            e for e in self.local_db.queue_entries((QUEUE_FAILED,))
            if e['retry_count'] < self.max_retries
        ])

    def failed_entries(self):
        """Entri yang sudah melewati batas percobaan (dead letter)."""
        return [
            e for e in self.local_db.queue_entries((QUEUE_FAILED,))
            if e['retry_count'] >= self.max_retries
        ]

    def requeue(self, entry_id):
        ok = self.local_db.requeue(entry_id)
        if ok:
            logger.info('[SYNC] Entri #%s dikembalikan ke antrean', entry_id)
            self.kick()
        return ok

    def _backoff(self, retry_count):
        return self.backoff_base * (2 ** (retry_count - 1))

    # ==================== PENGIRIMAN ====================
    def _deliver(self, entry):
        payload = entry['payload']
        if entry['type'] == TYPE_FINISH:
            return self.api.selesai_ujian(payload)
        return self.api.save_jawaban(payload)

    def drain(self, ignore_backoff=False, cancel=None):
        """Kirim entri antrean dari yang paling lama.

        Return jumlah entri terkirim. Gangguan jaringan menghentikan drain.
        Entri yang gagal, termasuk yang sudah mati atau ditolak server,
        memblokir entri berikutnya dengan kunci yang sama sampai di-``requeue``.
        """
        with self._drain_lock:
            delivered = 0
            blocked = set()
            for entry in self.local_db.queue_entries():
                if cancel is not None and cancel.cancelled:
                    break
                if entry['payload'] is None:
                    continue
                if entry['key'] in blocked:
                    continue

                dead = entry['status'] == QUEUE_FAILED and entry['retry_count'] >= self.max_retries
                if dead:
                    blocked.add(entry['key'])
                    continue
                if (not ignore_backoff and entry['next_attempt_at'] is not None
                        and entry['next_attempt_at'] > self.clock()):
                    blocked.add(entry['key'])
                    continue

                try:
                    response = self._deliver(entry)
                except NetworkError as e:
                    self._record_failure(entry, str(e))
                    logger.info('[SYNC] Offline, drain dihentikan: %s', e)
                    break
                except RejectedError as e:
                    self.local_db.mark_failed(entry['id'], self.max_retries, None, e.message)
                    blocked.add(entry['key'])
                    logger.error('[SYNC] Entri #%s %s ditolak server (%s): %s',
                                 entry['id'], entry['type'], e.status_code, e.message)
                    continue

                self.local_db.complete(entry['id'])
                delivered += 1
                logger.info('[SYNC] Entri #%s %s terkirim', entry['id'], entry['type'])
                for callback in self._listeners:
                    callback(entry, response)
            return delivered

    def _record_failure(self, entry, error):
        retry = entry['retry_count'] + 1
        next_at = self.clock() + self._backoff(retry)
        self.local_db.mark_failed(entry['id'], retry, next_at, error)
        if retry >= self.max_retries:
            logger.error('[SYNC] Entri #%s melewati batas %d percobaan, disimpan sebagai gagal',
                         entry['id'], self.max_retries)

    # ==================== WORKER LATAR ====================
    def kick(self):
        self._wake.set()

    def _connectivity_changed(self, online):
        if online:
            self.kick()

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._cancel = CancelToken()
        self._thread = threading.Thread(target=self._run, args=(self._cancel,), name='cbt-sync', daemon=True)
        self._thread.start()

    def stop(self, timeout=5):
        if self._cancel is not None:
            self._cancel.cancel()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self, cancel):
        while not cancel.cancelled:
            kicked = self._wake.is_set()
            self._wake.clear()
            try:
                was_online = self.monitor.online
                if self.monitor.check():
                    # koneksi baru pulih: jangan tunggu jadwal backoff
                    self.drain(ignore_backoff=kicked or not was_online, cancel=cancel)
            except Exception:
                logger.exception('[SYNC] Worker error, lanjut polling')
            self._wake.wait(self.poll_interval)
