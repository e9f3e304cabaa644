"""Tiga lapis penyimpanan lokal klien ujian.

1. ``MemoryTier``: dict di memori proses, hilang saat aplikasi ditutup.
2. ``KeyValueStore``: nilai kecil (user, agenda, snapshot jawaban terakhir),
   setiap ``set`` langsung di-commit ke file SQLite sendiri.
3. ``LocalDatabase``: data besar/terstruktur (paket ujian, soal, jawaban
   per soal, gambar, antrean kiriman).
"""

import json
import logging
import os
import threading
import time

from sqlalchemy import (
    Boolean, Column, Float, Index, Integer, LargeBinary, String, Text,
    create_engine, func,
)
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

QUEUE_PENDING = 'pending'
QUEUE_FAILED = 'failed'
QUEUE_COMPLETED = 'completed'


def _engine(path):
    return create_engine(f'sqlite:///{path}', connect_args={'check_same_thread': False})


def _loads(raw, what):
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        # satu record rusak tidak boleh ikut menghapus record lain
        logger.error('[STORAGE] Data %s rusak, diabaikan', what)
        return None


# ==================== TIER 1: MEMORI ====================
class MemoryTier:

    def __init__(self):
        self._lock = threading.Lock()
        self._data = {}

    def get(self, key, default=None):
        with self._lock:
            return self._data.get(key, default)

    def set(self, key, value):
        with self._lock:
            self._data[key] = value

    def delete(self, key):
        with self._lock:
            self._data.pop(key, None)

    def __contains__(self, key):
        with self._lock:
            return key in self._data

    def clear(self):
        with self._lock:
            self._data.clear()

    def __len__(self):
        with self._lock:
            return len(self._data)


# ==================== TIER 2: KEY-VALUE TAHAN RELOAD ====================
KVBase = declarative_base()


class KVEntry(KVBase):
    __tablename__ = 'kv'

    key = Column(String(200), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(Float, nullable=False)


class KeyValueStore:

    def __init__(self, path):
        self.engine = _engine(path)
        KVBase.metadata.create_all(self.engine)
        self.Session = sessionmaker(self.engine, expire_on_commit=False)

    def get(self, key, default=None):
        with self.Session() as s:
            row = s.get(KVEntry, key)
            if row is None:
                return default
            value = _loads(row.value, key)
            return default if value is None else value

    def set(self, key, value):
        raw = json.dumps(value, ensure_ascii=False)
        with self.Session() as s, s.begin():
            row = s.get(KVEntry, key)
            if row is None:
                s.add(KVEntry(key=key, value=raw, updated_at=time.time()))
            else:
                row.value = raw
                row.updated_at = time.time()

    def delete(self, key):
        with self.Session() as s, s.begin():
            row = s.get(KVEntry, key)
            if row is not None:
                s.delete(row)

    def keys(self, prefix=''):
        with self.Session() as s:
            q = s.query(KVEntry.key)
            if prefix:
                q = q.filter(KVEntry.key.startswith(prefix))
            return [k for (k,) in q.all()]

    def total_bytes(self):
        with self.Session() as s:
            return s.query(func.coalesce(func.sum(func.length(KVEntry.value)), 0)).scalar()


# ==================== TIER 3: DATABASE LOKAL ====================
Base = declarative_base()


class ExamPackageRow(Base):
    __tablename__ = 'exam_packages'

    agenda_id = Column(Integer, primary_key=True)
    data = Column(Text, nullable=False)
    downloaded_at = Column(Float, nullable=False)


class SoalSet(Base):
    """Kepala respons get-soal per mapel; isi soalnya di tabel ``questions``."""
    __tablename__ = 'soal_sets'

    mapel_id = Column(Integer, primary_key=True)
    agenda_id = Column(Integer, nullable=False)
    header = Column(Text, nullable=False)
    timestamp = Column(Float, nullable=False)


class LocalQuestion(Base):
    __tablename__ = 'questions'
    __table_args__ = (Index('ix_questions_agenda_mapel', 'agenda_id', 'mapel_id'),)

    id = Column(String(100), primary_key=True)
    agenda_id = Column(Integer, nullable=False)
    mapel_id = Column(Integer, nullable=False)
    soal_id = Column(Integer, nullable=False)
    posisi = Column(Integer, nullable=False)
    data = Column(Text, nullable=False)


class TempAnswer(Base):
    __tablename__ = 'temp_answers'
    __table_args__ = (
        Index('ix_temp_answers_agenda_mapel', 'agenda_id', 'mapel_id'),
        Index('ix_temp_answers_timestamp', 'timestamp'),
    )

    id = Column(String(100), primary_key=True)
    agenda_id = Column(Integer, nullable=False)
    mapel_id = Column(Integer, nullable=False)
    soal_id = Column(Integer, nullable=False)
    jawaban = Column(String(50), nullable=False)
    synced = Column(Boolean, nullable=False, default=False)
    timestamp = Column(Float, nullable=False)


class CachedImage(Base):
    __tablename__ = 'images'

    url = Column(String(500), primary_key=True)
    blob = Column(LargeBinary, nullable=False)
    content_type = Column(String(100))
    size = Column(Integer, nullable=False)
    last_access = Column(Float, nullable=False, index=True)


class QueueItem(Base):
    __tablename__ = 'submission_queue'

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(30), nullable=False)
    key = Column(String(100), nullable=False)
    payload = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=QUEUE_PENDING, index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)
    next_attempt_at = Column(Float)
    last_error = Column(Text)

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.type,
            'key': self.key,
            'payload': _loads(self.payload, f'queue#{self.id}'),
            'status': self.status,
            'retry_count': self.retry_count,
            'created_at': self.created_at,
            'next_attempt_at': self.next_attempt_at,
            'last_error': self.last_error,
        }


def question_key(agenda_id, mapel_id, soal_id):
    return f'{agenda_id}:{mapel_id}:{soal_id}'


class LocalDatabase:

    def __init__(self, path, clock=time.time):
        self.engine = _engine(path)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(self.engine, expire_on_commit=False)
        self.clock = clock

    # ---------- paket ujian ----------
    def store_package(self, agenda_id, package, cancel=None):
        """Simpan paket + seluruh soalnya dalam satu transaksi.

        Gagal atau dibatalkan di tengah jalan: rollback, paket lama tetap utuh.
        """
        now = self.clock()
        with self.Session() as s, s.begin():
            s.query(LocalQuestion).filter_by(agenda_id=agenda_id).delete()
            for mapel in package.get('mapel_list', []):
                mapel_id = int(mapel['id'])
                questions = package.get('questions_by_mapel', {}).get(str(mapel_id), [])
                self._write_questions(s, agenda_id, mapel_id, questions)
                if s.get(SoalSet, mapel_id) is None:
                    # header hasil get-soal online (waktu mulai, progres) tidak ditimpa
                    header = {
                        'mapel_detail': mapel,
                        'status': 'Baru',
                        'waktu_mulai': None,
                        'jawaban_sebelumnya': '',
                    }
                    self._write_header(s, agenda_id, mapel_id, header, now)
                if cancel is not None:
                    cancel.raise_if_cancelled()

            row = s.get(ExamPackageRow, agenda_id)
            raw = json.dumps(package, ensure_ascii=False)
            if row is None:
                s.add(ExamPackageRow(agenda_id=agenda_id, data=raw, downloaded_at=now))
            else:
                row.data = raw
                row.downloaded_at = now
            if cancel is not None:
                cancel.raise_if_cancelled()

    def get_package(self, agenda_id):
        with self.Session() as s:
            row = s.get(ExamPackageRow, agenda_id)
            if row is None:
                return None
            return _loads(row.data, f'exam_package#{agenda_id}')

    # ---------- soal ----------
    def _write_questions(self, s, agenda_id, mapel_id, questions):
        s.query(LocalQuestion).filter_by(agenda_id=agenda_id, mapel_id=mapel_id).delete()
        for posisi, soal in enumerate(questions, start=1):
            s.add(LocalQuestion(
                id=question_key(agenda_id, mapel_id, soal['id']),
                agenda_id=agenda_id,
                mapel_id=mapel_id,
                soal_id=int(soal['id']),
                posisi=posisi,
                data=json.dumps(soal, ensure_ascii=False),
            ))

    def _write_header(self, s, agenda_id, mapel_id, header, now):
        row = s.get(SoalSet, mapel_id)
        raw = json.dumps(header, ensure_ascii=False)
        if row is None:
            s.add(SoalSet(mapel_id=mapel_id, agenda_id=agenda_id, header=raw, timestamp=now))
        else:
            row.agenda_id = agenda_id
            row.header = raw
            row.timestamp = now

    def save_soal_set(self, agenda_id, mapel_id, payload):
        header = {k: v for k, v in payload.items() if k != 'data_soal'}
        with self.Session() as s, s.begin():
            self._write_questions(s, agenda_id, mapel_id, payload.get('data_soal', []))
            self._write_header(s, agenda_id, mapel_id, header, self.clock())

    def questions_by_mapel(self, agenda_id, mapel_id):
        with self.Session() as s:
            rows = (
                s.query(LocalQuestion)
                .filter_by(agenda_id=agenda_id, mapel_id=mapel_id)
                .order_by(LocalQuestion.posisi)
                .all()
            )
            questions = []
            for row in rows:
                soal = _loads(row.data, f'question {row.id}')
                if soal is not None:
                    questions.append(soal)
            return questions

    def get_soal_set(self, mapel_id):
        with self.Session() as s:
            row = s.get(SoalSet, mapel_id)
            if row is None:
                return None
            header = _loads(row.header, f'soal_set#{mapel_id}')
            agenda_id = row.agenda_id
        if header is None:
            return None
        payload = dict(header)
        payload['data_soal'] = self.questions_by_mapel(agenda_id, mapel_id)
        return payload

    def delete_soal_set(self, mapel_id):
        with self.Session() as s, s.begin():
            row = s.get(SoalSet, mapel_id)
            if row is not None:
                s.query(LocalQuestion).filter_by(agenda_id=row.agenda_id, mapel_id=mapel_id).delete()
                s.delete(row)

    # ---------- jawaban per soal ----------
    def save_temp_answers(self, agenda_id, mapel_id, answers):
        """``answers``: list (soal_id, token). Semua ditandai belum tersinkron."""
        now = self.clock()
        with self.Session() as s, s.begin():
            self._save_temp_answers(s, agenda_id, mapel_id, answers, now)
        return now

    def _save_temp_answers(self, s, agenda_id, mapel_id, answers, now):
        for soal_id, token in answers:
            key = question_key(agenda_id, mapel_id, soal_id)
            row = s.get(TempAnswer, key)
            if row is None:
                s.add(TempAnswer(id=key, agenda_id=agenda_id, mapel_id=mapel_id, soal_id=soal_id,
                                 jawaban=token, synced=False, timestamp=now))
            elif row.jawaban != token or row.synced:
                row.jawaban = token
                row.synced = False
                row.timestamp = now

    def temp_answers(self, agenda_id, mapel_id):
        with self.Session() as s:
            rows = (
                s.query(TempAnswer)
                .filter_by(agenda_id=agenda_id, mapel_id=mapel_id)
                .order_by(TempAnswer.soal_id)
                .all()
            )
            return [
                {'soal_id': r.soal_id, 'jawaban': r.jawaban, 'synced': r.synced, 'timestamp': r.timestamp}
                for r in rows
            ]

    def mark_answers_synced(self, agenda_id, mapel_id, until):
        with self.Session() as s, s.begin():
            return (
                s.query(TempAnswer)
                .filter(TempAnswer.agenda_id == agenda_id,
                        TempAnswer.mapel_id == mapel_id,
                        TempAnswer.timestamp <= until)
                .update({TempAnswer.synced: True}, synchronize_session=False)
            )

    def delete_synced_answers(self, older_than):
        with self.Session() as s, s.begin():
            return (
                s.query(TempAnswer)
                .filter(TempAnswer.synced.is_(True), TempAnswer.timestamp < older_than)
                .delete(synchronize_session=False)
            )

    # ---------- gambar ----------
    def get_image(self, url):
        with self.Session() as s, s.begin():
            row = s.get(CachedImage, url)
            if row is None:
                return None
            row.last_access = self.clock()
            return {'url': row.url, 'blob': row.blob, 'content_type': row.content_type, 'size': row.size}

    def has_image(self, url):
        with self.Session() as s:
            return s.query(CachedImage.url).filter_by(url=url).first() is not None

    def put_image(self, url, blob, content_type, budget, pinned=()):
        """Simpan gambar lalu buang yang paling lama tidak diakses (LRU)
        sampai total ukuran di bawah ``budget``. Gambar ``pinned`` tidak dibuang.
        """
        size = len(blob)
        if size > budget:
            raise ValueError(f'Gambar {url} ({size} byte) melebihi batas cache')
        now = self.clock()
        evicted = []
        with self.Session() as s, s.begin():
            row = s.get(CachedImage, url)
            if row is None:
                s.add(CachedImage(url=url, blob=blob, content_type=content_type, size=size, last_access=now))
            else:
                row.blob = blob
                row.content_type = content_type
                row.size = size
                row.last_access = now
            s.flush()

            total = s.query(func.coalesce(func.sum(CachedImage.size), 0)).scalar()
            if total > budget:
                candidates = (
                    s.query(CachedImage.url, CachedImage.size)
                    .filter(CachedImage.url != url)
                    .order_by(CachedImage.last_access)
                    .all()
                )
                for old_url, old_size in candidates:
                    if total <= budget:
                        break
                    if old_url in pinned:
                        continue
                    s.query(CachedImage).filter_by(url=old_url).delete()
                    total -= old_size
                    evicted.append(old_url)
                if total > budget:
                    raise ValueError('Cache gambar penuh oleh gambar soal yang sedang dibuka')
        return evicted

    def image_stats(self):
        with self.Session() as s:
            count, total = s.query(func.count(CachedImage.url), func.coalesce(func.sum(CachedImage.size), 0)).one()
            return {'count': count, 'bytes': total}

    # ---------- antrean kiriman ----------
    def enqueue(self, type_, key, payload, temp_answers=None):
        """Tulis antrean (dan jawaban per soal bila ada) dalam satu transaksi."""
        now = self.clock()
        with self.Session() as s, s.begin():
            if temp_answers:
                agenda_id, mapel_id, answers = temp_answers
                self._save_temp_answers(s, agenda_id, mapel_id, answers, now)
            item = QueueItem(type=type_, key=key, payload=json.dumps(payload, ensure_ascii=False),
                             status=QUEUE_PENDING, retry_count=0, created_at=now)
            s.add(item)
            s.flush()
            return item.id

    def queue_entries(self, statuses=(QUEUE_PENDING, QUEUE_FAILED)):
        with self.Session() as s:
            rows = s.query(QueueItem).filter(QueueItem.status.in_(statuses)).order_by(QueueItem.id).all()
            return [r.to_dict() for r in rows]

    def queue_entry(self, entry_id):
        with self.Session() as s:
            row = s.get(QueueItem, entry_id)
            return row.to_dict() if row else None

    def mark_failed(self, entry_id, retry_count, next_attempt_at, error):
        with self.Session() as s, s.begin():
            row = s.get(QueueItem, entry_id)
            if row is not None:
                row.status = QUEUE_FAILED
                row.retry_count = retry_count
                row.next_attempt_at = next_attempt_at
                row.last_error = error

    def complete(self, entry_id):
        with self.Session() as s, s.begin():
            row = s.get(QueueItem, entry_id)
            if row is not None:
                row.status = QUEUE_COMPLETED
                s.flush()
                s.delete(row)

    def requeue(self, entry_id):
        with self.Session() as s, s.begin():
            row = s.get(QueueItem, entry_id)
            if row is None:
                return False
            row.status = QUEUE_PENDING
            row.retry_count = 0
            row.next_attempt_at = None
            return True

    def count_queue(self, status):
        with self.Session() as s:
            return s.query(QueueItem).filter_by(status=status).count()


def open_tiers(data_dir, clock=time.time):
    os.makedirs(data_dir, exist_ok=True)
    kv = KeyValueStore(os.path.join(data_dir, 'kv.sqlite3'))
    local_db = LocalDatabase(os.path.join(data_dir, 'cbt_local.sqlite3'), clock=clock)
    return MemoryTier(), kv, local_db
