import logging
import time

from .client import ApiClient, NetworkError, RejectedError
from .settings import OfflineSettings
from .storage import open_tiers
from .sync import SyncEngine, TYPE_FINISH, TYPE_SAVE

logger = logging.getLogger(__name__)

KOSONG = '-'
PEMISAH = '|'

PACKAGE_FIELDS = ('agenda', 'mapel_list', 'questions_by_mapel', 'peserta_list')


def _key_soal(mapel_id):
    return f'soal_{mapel_id}'


def _key_jawaban(mapel_id):
    return f'jawaban_{mapel_id}'


def _key_waktu(mapel_id):
    return f'waktu_{mapel_id}'


def _image_urls(soal_set):
    urls = []
    for soal in (soal_set or {}).get('data_soal', []):
        url = (soal.get('gambar_url') or '').strip()
        if url and url not in urls:
            urls.append(url)
    return urls


class OfflineCache:
    """Cache ujian di sisi klien.

    Baca: memori -> key-value -> database lokal, tier yang lebih cepat
    diisi ulang saat data ditemukan di tier lebih lambat.
    Tulis jawaban: memori dan key-value selesai sebelum fungsi kembali,
    lalu jawaban per soal + antrean kiriman masuk database lokal.
    """

    def __init__(self, settings=None, api=None, session=None, clock=time.time):
        self.settings = settings or OfflineSettings()
        self.clock = clock
        self.memory, self.kv, self.local_db = open_tiers(self.settings.DATA_DIR, clock=clock)
        self._owns_api = api is None
        self.api = api or ApiClient(settings=self.settings, session=session)
        self.sync = SyncEngine(self.local_db, self.api, self.settings, clock=clock)
        self.sync.on_delivered(self._terkirim)
        self._open_images = set()

    def close(self):
        """Hentikan worker sync lalu lepas koneksi HTTP dan file database lokal."""
        self.sync.stop()
        if self._owns_api:
            self.api.close()
        self.kv.engine.dispose()
        self.local_db.engine.dispose()

    # ==================== TIER HELPER ====================
    def _get(self, key):
        value = self.memory.get(key)
        if value is not None:
            return value
        value = self.kv.get(key)
        if value is not None:
            self.memory.set(key, value)
        return value

    def _set(self, key, value):
        self.memory.set(key, value)
        self.kv.set(key, value)

    def _delete(self, key):
        self.memory.delete(key)
        self.kv.delete(key)

    # ==================== USER / AGENDA / MAPEL ====================
    def set_user(self, user):
        self._set('cached_user', user)

    def get_user(self):
        return self._get('cached_user')

    def set_agenda(self, agenda):
        self._set('cached_agenda', agenda)

    def get_agenda(self):
        return self._get('cached_agenda')

    def set_mapels(self, agenda_id, mapels):
        self._set(f'mapels_{agenda_id}', mapels)

    def get_mapels(self, agenda_id):
        return self._get(f'mapels_{agenda_id}')

    def set_waktu_mulai(self, mapel_id, waktu):
        self._set(_key_waktu(mapel_id), waktu)

    def get_waktu_mulai(self, mapel_id):
        return self._get(_key_waktu(mapel_id))

    # ==================== SOAL ====================
    def get_soal(self, mapel_id):
        key = _key_soal(mapel_id)
        soal_set = self._get(key)
        if soal_set is not None:
            return soal_set

        soal_set = self.local_db.get_soal_set(mapel_id)
        if soal_set is not None:
            self._set(key, soal_set)
        return soal_set

    def _simpan_soal(self, agenda_id, mapel_id, data):
        soal_set = {k: v for k, v in data.items() if k != 'success'}
        self.local_db.save_soal_set(agenda_id, mapel_id, soal_set)
        self._set(_key_soal(mapel_id), soal_set)
        if soal_set.get('waktu_mulai') and self.get_waktu_mulai(mapel_id) is None:
            self.set_waktu_mulai(mapel_id, soal_set['waktu_mulai'])
        # progres dari server dipakai hanya bila belum ada jawaban lokal
        if soal_set.get('jawaban_sebelumnya') and self._get(_key_jawaban(mapel_id)) is None:
            self._set(_key_jawaban(mapel_id), {
                'jwb': soal_set['jawaban_sebelumnya'],
                'timestamp': self.clock(),
                'selesai': soal_set.get('status') == 'Selesai',
            })
        return soal_set

    def fetch_soal(self, agenda_id, peserta_id, mapel_id, force=False):
        """Ambil soal satu mapel; jaringan hanya dipakai bila cache kosong atau ``force``."""
        soal_set = None if force else self.get_soal(mapel_id)
        if soal_set is None:
            try:
                data = self.api.get_soal(agenda_id, peserta_id, mapel_id)
            except NetworkError as e:
                soal_set = self.get_soal(mapel_id)
                if soal_set is None:
                    raise
                logger.info('[CACHE] Offline, soal mapel %s dari cache: %s', mapel_id, e)
            else:
                soal_set = self._simpan_soal(agenda_id, mapel_id, data)

        self._open_images = set(_image_urls(soal_set))
        return soal_set

    def get_questions_by_mapel(self, agenda_id, mapel_id):
        return self.local_db.questions_by_mapel(agenda_id, mapel_id)

    # ==================== JAWABAN ====================
    def _token_per_soal(self, mapel_id, jawaban):
        soal_set = self.get_soal(mapel_id)
        if soal_set is None:
            return []
        tokens = jawaban.split(PEMISAH) if jawaban else []
        answers = []
        for i, soal in enumerate(soal_set.get('data_soal', [])):
            token = tokens[i].strip() if i < len(tokens) else ''
            answers.append((int(soal['id']), token or KOSONG))
        return answers

    def _simpan_jawaban(self, type_, agenda_id, peserta_id, mapel_id, jawaban):
        jawaban = str(jawaban or '')
        # tier 1 dan 2 harus selesai sebelum apa pun yang lain
        self._set(_key_jawaban(mapel_id), {
            'jwb': jawaban,
            'timestamp': self.clock(),
            'selesai': type_ == TYPE_FINISH,
        })

        payload = {'pid': peserta_id, 'aid': agenda_id, 'mid': mapel_id, 'jwb': jawaban}
        answers = self._token_per_soal(mapel_id, jawaban)
        entry_id = self.sync.enqueue(type_, payload, temp_answers=(agenda_id, mapel_id, answers) if answers else None)
        self.sync.kick()
        return {'success': True, 'queued': True, 'entry_id': entry_id}

    def save_answer(self, agenda_id, peserta_id, mapel_id, jawaban):
        return self._simpan_jawaban(TYPE_SAVE, agenda_id, peserta_id, mapel_id, jawaban)

    def finish_exam(self, agenda_id, peserta_id, mapel_id, jawaban):
        return self._simpan_jawaban(TYPE_FINISH, agenda_id, peserta_id, mapel_id, jawaban)

    def get_answer(self, mapel_id, agenda_id=None):
        snapshot = self._get(_key_jawaban(mapel_id))
        if snapshot is not None:
            return snapshot['jwb']
        if agenda_id is None:
            return None

        rows = self.local_db.temp_answers(agenda_id, mapel_id)
        soal_set = self.get_soal(mapel_id)
        if not rows or soal_set is None:
            return None
        per_soal = {r['soal_id']: r['jawaban'] for r in rows}
        jawaban = PEMISAH.join(per_soal.get(int(s['id']), KOSONG) for s in soal_set.get('data_soal', []))
        self.memory.set(_key_jawaban(mapel_id), {'jwb': jawaban, 'timestamp': self.clock(), 'selesai': False})
        return jawaban

    def _terkirim(self, entry, response):
        payload = entry['payload']
        self.local_db.mark_answers_synced(payload['aid'], payload['mid'], entry['created_at'])
        if entry['type'] == TYPE_FINISH:
            self.clear_exam_cache(payload['mid'])

    def clear_exam_cache(self, mapel_id):
        for key in (_key_soal(mapel_id), _key_jawaban(mapel_id), _key_waktu(mapel_id)):
            self._delete(key)
        self.local_db.delete_soal_set(mapel_id)
        self._open_images = set()
        logger.info('[CACHE] Cache ujian mapel %s dibersihkan', mapel_id)

    # ==================== PAKET UJIAN ====================
    def download_package(self, agenda_id, cancel=None):
        """Unduh paket satu agenda. Gagal/dibatalkan: paket lama tetap dipakai."""
        package = self.api.get_exam_package(agenda_id, cancel=cancel)
        missing = [f for f in PACKAGE_FIELDS if f not in package]
        if missing:
            raise ValueError(f'Paket ujian tidak lengkap: {", ".join(missing)}')

        self.local_db.store_package(agenda_id, package, cancel=cancel)
        self.memory.set(f'package_{agenda_id}', package)
        for mapel in package['mapel_list']:
            # soal lama di tier cepat diganti isi paket baru
            self._delete(_key_soal(mapel['id']))
        self.set_mapels(agenda_id, package['mapel_list'])

        meta = package.get('metadata', {})
        logger.info('[CACHE] Paket agenda %s tersimpan: %s soal', agenda_id, meta.get('total_questions'))
        return meta

    def get_exam_package(self, agenda_id):
        key = f'package_{agenda_id}'
        package = self.memory.get(key)
        if package is None:
            package = self.local_db.get_package(agenda_id)
            if package is not None:
                self.memory.set(key, package)
        return package

    # ==================== GAMBAR ====================
    def precache_images(self, urls):
        hasil = {'berhasil': 0, 'gagal': 0, 'dilewati': 0}
        for url in urls:
            if self.local_db.has_image(url):
                hasil['dilewati'] += 1
                continue
            try:
                self._unduh_gambar(url)
                hasil['berhasil'] += 1
            except (NetworkError, RejectedError, ValueError) as e:
                hasil['gagal'] += 1
                logger.warning('[CACHE] Gambar %s gagal di-cache: %s', url, e)
        return hasil

    def _unduh_gambar(self, url):
        blob, content_type = self.api.download_image(url)
        evicted = self.local_db.put_image(url, blob, content_type, self.settings.IMAGE_BUDGET_BYTES,
                                          pinned=self._open_images)
        if evicted:
            logger.debug('[CACHE] %d gambar lama dibuang', len(evicted))

    def get_image(self, url):
        image = self.local_db.get_image(url)
        if image is not None:
            return image
        try:
            self._unduh_gambar(url)
        except (NetworkError, RejectedError, ValueError) as e:
            logger.warning('[CACHE] Gambar %s tidak tersedia: %s', url, e)
            return None
        return self.local_db.get_image(url)

    # ==================== STATUS ====================
    def status(self):
        return {
            'online': self.sync.monitor.online,
            'pending_sync': self.sync.pending_count(),
            'failed_sync': len(self.sync.failed_entries()),
            'memory_keys': len(self.memory),
            'kv_keys': len(self.kv.keys()),
            'kv_bytes': self.kv.total_bytes(),
            'images': self.local_db.image_stats(),
        }

    def cleanup_old(self, max_age=7 * 24 * 3600):
        """Hapus jawaban per soal yang sudah tersinkron dan lebih tua dari ``max_age`` detik."""
        deleted = self.local_db.delete_synced_answers(self.clock() - max_age)
        if deleted:
            logger.info('[CACHE] %d jawaban lama dibersihkan', deleted)
        return deleted
