from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from datetime import datetime

db = SQLAlchemy()

STATUS_MAPEL_SIAP = 'Siap'
STATUS_PESERTA_AKTIF = 'Aktif'
STATUS_JAWABAN_PROSES = 'Proses'
STATUS_JAWABAN_SELESAI = 'Selesai'

PERNYATAAN_FIELDS = (
    [f'pernyataan_{i}' for i in range(1, 9)]
    + [f'pernyataan_kiri_{i}' for i in range(1, 9)]
    + [f'pernyataan_kanan_{i}' for i in range(1, 9)]
)

KOSONG = '-'
PEMISAH = '|'


# ===================== USER (ADMIN) =====================
class User(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(50), unique=True, nullable=False)
    password = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default='admin')
    nama = db.Column(db.String(100))


# ===================== AGENDA UJIAN =====================
class Agenda(db.Model):
    __tablename__ = 'agenda_ujian'

    id = db.Column(db.Integer, primary_key=True)
    agenda_ujian = db.Column(db.String(150), nullable=False)
    tgljam_mulai = db.Column(db.DateTime, nullable=False)
    tgljam_selesai = db.Column(db.DateTime, nullable=False)
    token_ujian = db.Column(db.String(20))
    durasi_ujian = db.Column(db.Integer, default=60)

    mapel = db.relationship('Mapel', backref='agenda', passive_deletes=True, order_by='Mapel.id')

    def to_dict(self, with_token=False):
        data = {
            'id': self.id,
            'agenda_ujian': self.agenda_ujian,
            'tgljam_mulai': self.tgljam_mulai.isoformat(),
            'tgljam_selesai': self.tgljam_selesai.isoformat(),
            'durasi_ujian': self.durasi_ujian,
        }
        if with_token:
            data['token_ujian'] = self.token_ujian or ''
        return data


# ===================== MATA PELAJARAN =====================
class Mapel(db.Model):
    __tablename__ = 'mata_pelajaran'

    id = db.Column(db.Integer, primary_key=True)
    id_agenda = db.Column(db.Integer, db.ForeignKey('agenda_ujian.id', ondelete='CASCADE'), nullable=False)
    nama_mata_pelajaran = db.Column(db.String(100), nullable=False)
    jumlah_soal = db.Column(db.Integer, default=0)
    durasi_ujian = db.Column(db.Integer, default=60)
    status_mapel = db.Column(db.String(20), default='Draft')

    def to_dict(self):
        return {
            'id': self.id,
            'nama_mata_pelajaran': self.nama_mata_pelajaran,
            'jumlah_soal': self.jumlah_soal,
            'durasi_ujian': self.durasi_ujian,
        }


# ===================== BANK SOAL =====================
class Soal(db.Model):
    __tablename__ = 'bank_soal'

    id = db.Column(db.Integer, primary_key=True)
    id_mapel = db.Column(db.Integer, db.ForeignKey('mata_pelajaran.id', ondelete='CASCADE'), nullable=False)
    no_soal = db.Column(db.Integer)
    pertanyaan = db.Column(db.Text, nullable=False)
    type_soal = db.Column(db.String(30), default='pg')
    pilihan_a = db.Column(db.Text)
    pilihan_b = db.Column(db.Text)
    pilihan_c = db.Column(db.Text)
    pilihan_d = db.Column(db.Text)
    pilihan_e = db.Column(db.Text)
    gambar_url = db.Column(db.String(500))
    # soal benar/salah dan menjodohkan
    pernyataan_1 = db.Column(db.Text)
    pernyataan_2 = db.Column(db.Text)
    pernyataan_3 = db.Column(db.Text)
    pernyataan_4 = db.Column(db.Text)
    pernyataan_5 = db.Column(db.Text)
    pernyataan_6 = db.Column(db.Text)
    pernyataan_7 = db.Column(db.Text)
    pernyataan_8 = db.Column(db.Text)
    pernyataan_kiri_1 = db.Column(db.Text)
    pernyataan_kiri_2 = db.Column(db.Text)
    pernyataan_kiri_3 = db.Column(db.Text)
    pernyataan_kiri_4 = db.Column(db.Text)
    pernyataan_kiri_5 = db.Column(db.Text)
    pernyataan_kiri_6 = db.Column(db.Text)
    pernyataan_kiri_7 = db.Column(db.Text)
    pernyataan_kiri_8 = db.Column(db.Text)
    pernyataan_kanan_1 = db.Column(db.Text)
    pernyataan_kanan_2 = db.Column(db.Text)
    pernyataan_kanan_3 = db.Column(db.Text)
    pernyataan_kanan_4 = db.Column(db.Text)
    pernyataan_kanan_5 = db.Column(db.Text)
    pernyataan_kanan_6 = db.Column(db.Text)
    pernyataan_kanan_7 = db.Column(db.Text)
    pernyataan_kanan_8 = db.Column(db.Text)

    def to_dict(self):
        data = {
            'id': self.id,
            'no_soal': self.no_soal,
            'pertanyaan': self.pertanyaan,
            'type_soal': self.type_soal,
            'pilihan_a': self.pilihan_a,
            'pilihan_b': self.pilihan_b,
            'pilihan_c': self.pilihan_c,
            'pilihan_d': self.pilihan_d,
            'pilihan_e': self.pilihan_e,
            'gambar_url': self.gambar_url,
        }
        data.update({f: getattr(self, f) for f in PERNYATAAN_FIELDS})
        return data


# ===================== PESERTA =====================
class Peserta(db.Model):
    __tablename__ = 'peserta'

    id = db.Column(db.Integer, primary_key=True)
    nama_peserta = db.Column(db.String(100), nullable=False)
    nis_username = db.Column(db.String(50), unique=True, nullable=False)
    password = db.Column(db.String(255), nullable=False)
    jenjang_studi = db.Column(db.String(30))
    kelas = db.Column(db.String(30))
    asal_sekolah = db.Column(db.String(150))
    no_wa_peserta = db.Column(db.String(20), unique=True)
    no_wa_ortu = db.Column(db.String(20))
    id_agenda = db.Column(db.Integer, db.ForeignKey('agenda_ujian.id', ondelete='SET NULL'))
    status = db.Column(db.String(20), default=STATUS_PESERTA_AKTIF)

    def to_dict(self):
        # password tidak pernah ikut dikirim
        return {
            'id': self.id,
            'nama_peserta': self.nama_peserta,
            'nis_username': self.nis_username,
            'jenjang_studi': self.jenjang_studi,
            'kelas': self.kelas,
            'asal_sekolah': self.asal_sekolah,
            'no_wa_peserta': self.no_wa_peserta,
            'no_wa_ortu': self.no_wa_ortu,
            'id_agenda': self.id_agenda,
            'status': self.status,
        }


# ===================== JAWABAN PER MAPEL =====================
class Jawaban(db.Model):
    __tablename__ = 'jawaban'
    __table_args__ = (db.UniqueConstraint('id_peserta', 'id_agenda', 'id_mapel'),)

    id = db.Column(db.Integer, primary_key=True)
    id_peserta = db.Column(db.Integer, db.ForeignKey('peserta.id', ondelete='CASCADE'), nullable=False)
    id_agenda = db.Column(db.Integer, db.ForeignKey('agenda_ujian.id', ondelete='CASCADE'), nullable=False)
    id_mapel = db.Column(db.Integer, db.ForeignKey('mata_pelajaran.id', ondelete='CASCADE'), nullable=False)

    nama_peserta_snap = db.Column(db.String(100))
    nama_agenda_snap = db.Column(db.String(150))
    nama_mapel_snap = db.Column(db.String(100))

    jawaban = db.Column(db.Text, default='')
    status = db.Column(db.String(20), default=STATUS_JAWABAN_PROSES)

    tgljam_login = db.Column(db.DateTime, default=datetime.now)
    tgljam_mulai = db.Column(db.DateTime, default=datetime.now)
    tgljam_selesai = db.Column(db.DateTime)
    last_sync = db.Column(db.DateTime)


# ===================== MAPPING SOAL GABUNGAN =====================
class SoalMapping(db.Model):
    __tablename__ = 'soal_mapping_gabungan'
    __table_args__ = (
        db.UniqueConstraint('id_agenda', 'no_urut_gabungan'),
        db.UniqueConstraint('id_agenda', 'id_soal'),
    )

    id = db.Column(db.Integer, primary_key=True)
    id_agenda = db.Column(db.Integer, db.ForeignKey('agenda_ujian.id', ondelete='CASCADE'), nullable=False, index=True)
    id_mapel = db.Column(db.Integer, nullable=False)
    id_soal = db.Column(db.Integer, nullable=False)
    no_soal_mapel = db.Column(db.Integer, nullable=False)
    no_urut_gabungan = db.Column(db.Integer, nullable=False)

    def to_dict(self):
        return {
            'id_agenda': self.id_agenda,
            'id_mapel': self.id_mapel,
            'id_soal': self.id_soal,
            'no_soal_mapel': self.no_soal_mapel,
            'no_urut_gabungan': self.no_urut_gabungan,
        }


# ===================== JAWABAN GABUNGAN =====================
class JawabanGabungan(db.Model):
    __tablename__ = 'jawaban_gabungan'
    __table_args__ = (db.UniqueConstraint('id_peserta', 'id_agenda'),)

    id = db.Column(db.Integer, primary_key=True)
    id_peserta = db.Column(db.Integer, db.ForeignKey('peserta.id', ondelete='CASCADE'), nullable=False)
    id_agenda = db.Column(db.Integer, db.ForeignKey('agenda_ujian.id', ondelete='CASCADE'), nullable=False)
    jawaban = db.Column(db.Text, nullable=False)
    total_soal = db.Column(db.Integer, nullable=False)
    tgljam_update = db.Column(db.DateTime, default=datetime.now)

    # UPDATE ... WHERE version = ? ; bentrok -> StaleDataError
    version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {'version_id_col': version}
