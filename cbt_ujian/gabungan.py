"""Jawaban gabungan: satu string jawaban per peserta untuk seluruh agenda.

Setiap soal dari semua mapel "Siap" dalam satu agenda mendapat nomor urut
gabungan (1..N). Urutan mapel menurut id naik, soal di dalam mapel menurut
``no_soal`` naik (soal tanpa ``no_soal`` di belakang, lalu menurut id).
Token jawaban mapel ke-i selalu milik soal ke-i pada urutan yang sama.

Contoh: mapel 1 punya 2 soal (urut 1, 2), mapel 2 punya 2 soal (urut 3, 4).
Jawaban mapel 1 ``B|-`` dan mapel 2 ``-|D`` menghasilkan ``B|-|-|D``.
"""

import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from .models import (
    db, Mapel, Soal, Jawaban, SoalMapping, JawabanGabungan,
    STATUS_MAPEL_SIAP, KOSONG, PEMISAH,
)

logger = logging.getLogger(__name__)


# ==================== HELPER STRING JAWABAN ====================
def pecah_jawaban(jawaban_string):
    if not jawaban_string:
        return []
    return [token if token != '' else KOSONG for token in jawaban_string.split(PEMISAH)]


def gabung_jawaban(tokens):
    return PEMISAH.join(tokens)


def jawaban_kosong(total):
    return gabung_jawaban([KOSONG] * total)


def soal_terurut(id_mapel):
    return (
        Soal.query
        .filter_by(id_mapel=id_mapel)
        .order_by(Soal.no_soal.is_(None), Soal.no_soal, Soal.id)
        .all()
    )


class KeyedLock:
    """Satu mutex per kunci; entri dibuang saat tidak ada pemakai."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}
        self._refs = defaultdict(int)

    @contextmanager
    def hold(self, key):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._refs[key] += 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._refs[key] -= 1
                if self._refs[key] == 0:
                    del self._refs[key]
                    del self._locks[key]


# ==================== MAPPING SOAL GABUNGAN ====================
class SoalMappingIndex:

    def __init__(self):
        self._locks = KeyedLock()

    def generate_mapping(self, id_agenda):
        """Hitung ulang mapping satu agenda dan ganti seluruh baris lama.

        Tidak pernah di-patch sebagian. Tanpa mapel "Siap" (atau tanpa soal)
        tidak ada yang diubah.
        """
        with self._locks.hold(id_agenda):
            mapel_list = (
                Mapel.query
                .filter_by(id_agenda=id_agenda, status_mapel=STATUS_MAPEL_SIAP)
                .order_by(Mapel.id)
                .all()
            )
            if not mapel_list:
                logger.info('[GABUNGAN] Tidak ada mapel siap untuk agenda %s', id_agenda)
                return {'success': False, 'message': 'Tidak ada mapel', 'total_soal': 0, 'mappings': []}

            mappings = []
            for mapel in mapel_list:
                soal_list = soal_terurut(mapel.id)
                logger.debug('[GABUNGAN] Mapel %s: %d soal', mapel.nama_mata_pelajaran, len(soal_list))
                for posisi, soal in enumerate(soal_list, start=1):
                    mappings.append({
                        'id_agenda': id_agenda,
                        'id_mapel': mapel.id,
                        'id_soal': soal.id,
                        'no_soal_mapel': posisi,
                        'no_urut_gabungan': len(mappings) + 1,
                    })

            if not mappings:
                logger.info('[GABUNGAN] Agenda %s belum punya soal', id_agenda)
                return {'success': False, 'message': 'Tidak ada soal', 'total_soal': 0, 'mappings': []}

            SoalMapping.query.filter_by(id_agenda=id_agenda).delete()
            db.session.add_all([SoalMapping(**m) for m in mappings])
            try:
                db.session.commit()
            except IntegrityError:
                # proses lain menulis mapping yang sama (deterministik) lebih dulu
                db.session.rollback()
                logger.info('[GABUNGAN] Mapping agenda %s sudah ditulis proses lain', id_agenda)

            logger.info('[GABUNGAN] Mapping agenda %s dibuat: %d soal', id_agenda, len(mappings))
            return {'success': True, 'total_soal': len(mappings), 'mappings': mappings}

    def lookup(self, id_agenda, id_mapel, id_soal):
        row = SoalMapping.query.filter_by(id_agenda=id_agenda, id_mapel=id_mapel, id_soal=id_soal).first()
        return row.no_urut_gabungan if row else None

    def mapping_mapel(self, id_agenda, id_mapel):
        rows = SoalMapping.query.filter_by(id_agenda=id_agenda, id_mapel=id_mapel).all()
        return {r.id_soal: r.no_urut_gabungan for r in rows}

    def all_mappings(self, id_agenda):
        return (
            SoalMapping.query
            .filter_by(id_agenda=id_agenda)
            .order_by(SoalMapping.no_urut_gabungan)
            .all()
        )

    def total_soal(self, id_agenda):
        return SoalMapping.query.filter_by(id_agenda=id_agenda).count()


# ==================== AGREGATOR JAWABAN GABUNGAN ====================
class CombinedAnswerAggregator:
    """Menjaga ``jawaban_gabungan`` sinkron dengan jawaban per mapel.

    Read-modify-write diserialkan per (peserta, agenda) dengan mutex di
    dalam proses, dan kolom ``version`` menangkap bentrok antar proses.
    """

    def __init__(self, index=None, cas_retry=5):
        self.index = index or SoalMappingIndex()
        self.cas_retry = cas_retry
        self._locks = KeyedLock()

    def _query(self, id_peserta, id_agenda):
        return JawabanGabungan.query.filter_by(id_peserta=id_peserta, id_agenda=id_agenda)

    def ensure_initialized(self, id_peserta, id_agenda):
        existing = self._query(id_peserta, id_agenda).first()
        if existing is not None:
            return {'success': True, 'created': False, 'total_soal': existing.total_soal,
                    'jawaban_awal': existing.jawaban}

        total = self.index.total_soal(id_agenda)
        if total == 0:
            hasil = self.index.generate_mapping(id_agenda)
            if not hasil['success']:
                return hasil
            total = hasil['total_soal']

        jawaban_awal = jawaban_kosong(total)
        db.session.add(JawabanGabungan(
            id_peserta=id_peserta,
            id_agenda=id_agenda,
            jawaban=jawaban_awal,
            total_soal=total,
            tgljam_update=datetime.now(),
        ))
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            existing = self._query(id_peserta, id_agenda).first()
            if existing is None:
                raise
            return {'success': True, 'created': False, 'total_soal': existing.total_soal,
                    'jawaban_awal': existing.jawaban}

        logger.info('[GABUNGAN] Jawaban gabungan peserta %s diinisialisasi: %d soal', id_peserta, total)
        return {'success': True, 'created': True, 'total_soal': total, 'jawaban_awal': jawaban_awal}

    def _resolve(self, id_peserta, id_agenda, id_mapel, soal_list):
        """Pasangan (indeks token di jawaban mapel, nomor urut gabungan)."""
        peta = self.index.mapping_mapel(id_agenda, id_mapel)
        if any(soal.id not in peta for soal in soal_list):
            logger.info('[GABUNGAN] Mapping mapel %s belum lengkap, inisialisasi dulu', id_mapel)
            self.ensure_initialized(id_peserta, id_agenda)
            peta = self.index.mapping_mapel(id_agenda, id_mapel)
            if any(soal.id not in peta for soal in soal_list):
                self.index.generate_mapping(id_agenda)
                peta = self.index.mapping_mapel(id_agenda, id_mapel)

        resolved = []
        for i, soal in enumerate(soal_list):
            urut = peta.get(soal.id)
            if urut is None:
                logger.warning('[GABUNGAN] Soal %s (mapel %s) tidak punya mapping, dilewati', soal.id, id_mapel)
                continue
            resolved.append((i, urut))
        return resolved

    def _rebuild(self, row, total):
        tokens = [KOSONG] * total
        posisi = defaultdict(dict)
        for m in self.index.all_mappings(row.id_agenda):
            posisi[m.id_mapel][m.no_soal_mapel] = m.no_urut_gabungan
        for jwb in Jawaban.query.filter_by(id_peserta=row.id_peserta, id_agenda=row.id_agenda).all():
            for i, token in enumerate(pecah_jawaban(jwb.jawaban), start=1):
                urut = posisi[jwb.id_mapel].get(i)
                if urut is not None and urut <= total:
                    tokens[urut - 1] = token
        row.jawaban = gabung_jawaban(tokens)
        row.total_soal = total
        row.tgljam_update = datetime.now()
        logger.info('[GABUNGAN] Jawaban gabungan peserta %s dibangun ulang: %d soal', row.id_peserta, total)

    def _load_row(self, id_peserta, id_agenda):
        row = self._query(id_peserta, id_agenda).populate_existing().first()
        if row is None:
            hasil = self.ensure_initialized(id_peserta, id_agenda)
            if not hasil['success']:
                return None
            row = self._query(id_peserta, id_agenda).populate_existing().first()
        total = self.index.total_soal(id_agenda)
        if row is not None and total and row.total_soal != total:
            self._rebuild(row, total)
        return row

    def _jawaban_terbaru(self, id_peserta, id_agenda, id_mapel, jawaban_mapel):
        # baris per mapel yang tersimpan menang atas salinan milik pemanggil
        jwb = (
            Jawaban.query
            .filter_by(id_peserta=id_peserta, id_agenda=id_agenda, id_mapel=id_mapel)
            .populate_existing()
            .first()
        )
        return jwb.jawaban if jwb is not None and jwb.jawaban is not None else jawaban_mapel

    def apply_subject_answers(self, id_peserta, id_agenda, id_mapel, jawaban_mapel):
        soal_list = soal_terurut(id_mapel)
        if not soal_list:
            logger.info('[GABUNGAN] Tidak ada soal untuk mapel %s', id_mapel)
            return {'success': False, 'message': 'Tidak ada soal', 'updated': 0}

        resolved = self._resolve(id_peserta, id_agenda, id_mapel, soal_list)

        with self._locks.hold((id_peserta, id_agenda)):
            for attempt in range(1, self.cas_retry + 1):
                row = self._load_row(id_peserta, id_agenda)
                if row is None:
                    return {'success': False, 'message': 'Jawaban gabungan tidak bisa dibuat', 'updated': 0}

                tokens = pecah_jawaban(self._jawaban_terbaru(id_peserta, id_agenda, id_mapel, jawaban_mapel))
                gabungan = pecah_jawaban(row.jawaban)
                for i, urut in resolved:
                    if 0 < urut <= len(gabungan):
                        gabungan[urut - 1] = tokens[i] if i < len(tokens) else KOSONG
                row.jawaban = gabung_jawaban(gabungan)
                row.tgljam_update = datetime.now()
                try:
                    db.session.commit()
                except StaleDataError:
                    db.session.rollback()
                    logger.info('[GABUNGAN] Versi bentrok peserta %s agenda %s (percobaan %d)',
                                id_peserta, id_agenda, attempt)
                    continue
                return {'success': True, 'updated': len(resolved)}

        logger.error('[GABUNGAN] Gagal update jawaban gabungan peserta %s agenda %s', id_peserta, id_agenda)
        return {'success': False, 'message': 'Jawaban gabungan sedang dipakai, coba lagi', 'updated': 0}

    def get_combined_answer(self, id_peserta, id_agenda):
        row = self._query(id_peserta, id_agenda).first()
        if row is None:
            return None

        tokens = pecah_jawaban(row.jawaban)
        per_urut = {m.no_urut_gabungan: m for m in self.index.all_mappings(id_agenda)}
        details = []
        for i, token in enumerate(tokens, start=1):
            m = per_urut.get(i)
            details.append({
                'no_urut': i,
                'jawaban': token,
                'id_mapel': m.id_mapel if m else None,
                'id_soal': m.id_soal if m else None,
                'no_soal_mapel': m.no_soal_mapel if m else None,
            })

        return {
            'jawaban_string': row.jawaban,
            'jawaban_array': tokens,
            'soal_details': details,
            'total_soal': row.total_soal,
            'tgljam_update': row.tgljam_update.isoformat() if row.tgljam_update else None,
        }

    def rebuild_agenda(self, id_agenda):
        """Bangun ulang semua jawaban gabungan agenda dari jawaban per mapel."""
        total = self.index.total_soal(id_agenda)
        peserta_ids = [r.id_peserta for r in JawabanGabungan.query.filter_by(id_agenda=id_agenda).all()]
        for id_peserta in peserta_ids:
            with self._locks.hold((id_peserta, id_agenda)):
                row = self._query(id_peserta, id_agenda).populate_existing().first()
                self._rebuild(row, total)
                try:
                    db.session.commit()
                except StaleDataError:
                    # baris ditulis proses lain; _load_row membangun ulang saat tulis berikutnya
                    db.session.rollback()
                    logger.warning('[GABUNGAN] Rebuild peserta %s bentrok versi', id_peserta)
        return len(peserta_ids)


def get_aggregator():
    return current_app.extensions['gabungan']
