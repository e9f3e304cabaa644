import logging

import pandas as pd

from flask import Blueprint, request, jsonify, current_app
from flask_login import login_required, current_user, login_user, logout_user
from werkzeug.security import generate_password_hash, check_password_hash

from ..errors import ValidationError
from ..gabungan import get_aggregator
from ..models import (
    db, User, Agenda, Mapel, Soal, Peserta,
    PERNYATAAN_FIELDS, STATUS_MAPEL_SIAP, STATUS_PESERTA_AKTIF,
)
from ..store import transient_retry

logger = logging.getLogger(__name__)

bp = Blueprint('admin', __name__)

KOLOM_SOAL = ['no_soal', 'pertanyaan', 'type_soal', 'pilihan_a', 'pilihan_b',
              'pilihan_c', 'pilihan_d', 'pilihan_e', 'gambar_url'] + PERNYATAAN_FIELDS


def _cek_admin():
    if current_user.role != 'admin':
        raise ValidationError('Akses ditolak!', 403)


def _teks(row, kolom):
    value = row.get(kolom)
    if value is None or pd.isna(value):
        return None
    text = str(value).strip()
    return text or None


def _baca_excel():
    file = request.files.get('file_excel')
    if not file or not file.filename.endswith(('.xlsx', '.xls')):
        raise ValidationError('File Excel tidak ditemukan atau format file salah!')
    try:
        return pd.read_excel(file)
    except Exception as e:
        raise ValidationError(f'Gagal memproses file: {e}')


# ==================== LOGIN ADMIN ====================
@bp.route('/login', methods=['POST'])
def login():
    data = request.get_json(silent=True) or request.form
    username = str(data.get('username') or '').strip()
    password = data.get('password') or ''

    user = User.query.filter_by(username=username, role='admin').first()
    if not user or not check_password_hash(user.password, password):
        raise ValidationError('Username atau password salah!', 401)

    login_user(user)
    return jsonify({'success': True, 'message': f'Selamat datang, {user.nama or user.username}!'})


@bp.route('/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({'success': True, 'message': 'Anda berhasil logout!'})


# ==================== IMPORT SOAL (EXCEL) ====================
@bp.route('/import-soal/<int:mapel_id>', methods=['POST'])
@login_required
def import_soal(mapel_id):
    _cek_admin()
    mapel = db.session.get(Mapel, mapel_id)
    if mapel is None:
        raise ValidationError('Mapel tidak ditemukan', 404)
    if mapel.status_mapel == STATUS_MAPEL_SIAP:
        raise ValidationError('Mapel sudah siap, soal tidak bisa diubah')

    df = _baca_excel()
    if 'pertanyaan' not in df.columns:
        raise ValidationError('Kolom "pertanyaan" wajib ada')

    berhasil = 0
    gagal = 0
    for _, row in df.iterrows():
        data = {k: _teks(row, k) for k in KOLOM_SOAL}
        if not data['pertanyaan']:
            gagal += 1
            continue
        try:
            data['no_soal'] = int(float(data['no_soal'])) if data['no_soal'] else None
        except ValueError:
            gagal += 1
            continue
        data['type_soal'] = data['type_soal'] or 'pg'
        db.session.add(Soal(id_mapel=mapel.id, **data))
        berhasil += 1

    mapel.jumlah_soal = Soal.query.filter_by(id_mapel=mapel.id).count()
    db.session.commit()
    logger.info('[ADMIN] Import soal mapel %s: berhasil %d, gagal %d', mapel.id, berhasil, gagal)
    return jsonify({'success': True, 'berhasil': berhasil, 'gagal': gagal})


# ==================== IMPORT PESERTA (EXCEL) ====================
@bp.route('/import-peserta/<int:agenda_id>', methods=['POST'])
@login_required
def import_peserta(agenda_id):
    _cek_admin()
    agenda = db.session.get(Agenda, agenda_id)
    if agenda is None:
        raise ValidationError('Agenda tidak ditemukan', 404)

    df = _baca_excel()
    baru = []
    gagal = 0
    for _, row in df.iterrows():
        username = _teks(row, 'Username')
        nama = _teks(row, 'Nama')
        if username and username.endswith('.0'):
            # angka dari Excel terbaca sebagai float
            username = username[:-2]
        if not all([username, nama]):
            gagal += 1
            continue

        no_wa = _teks(row, 'WA')
        duplikat = Peserta.query.filter(
            db.or_(Peserta.nis_username == username,
                   db.and_(Peserta.no_wa_peserta.isnot(None), Peserta.no_wa_peserta == no_wa))
        ).first()
        if duplikat or username in {p.nis_username for p in baru}:
            gagal += 1
            continue

        # Password default = username
        peserta = Peserta(
            nama_peserta=nama.upper(),
            nis_username=username,
            password=generate_password_hash(_teks(row, 'Password') or username),
            kelas=_teks(row, 'Kelas'),
            asal_sekolah=_teks(row, 'Sekolah'),
            no_wa_peserta=no_wa,
            id_agenda=agenda.id,
            status=STATUS_PESERTA_AKTIF,
        )
        db.session.add(peserta)
        baru.append(peserta)

    db.session.commit()

    aggregator = get_aggregator()
    for peserta in baru:
        aggregator.ensure_initialized(peserta.id, agenda.id)

    logger.info('[ADMIN] Import peserta agenda %s: berhasil %d, gagal %d', agenda.id, len(baru), gagal)
    return jsonify({'success': True, 'berhasil': len(baru), 'gagal': gagal})


# ==================== MAPEL SIAP & MAPPING ====================
@transient_retry
def _regenerate(agenda_id):
    aggregator = get_aggregator()
    hasil = aggregator.index.generate_mapping(agenda_id)
    if not hasil['success']:
        raise ValidationError(hasil['message'])
    dibangun = aggregator.rebuild_agenda(agenda_id)
    return {'success': True, 'total_soal': hasil['total_soal'], 'peserta_dibangun_ulang': dibangun}


@bp.route('/mapel/<int:mapel_id>/siap', methods=['POST'])
@login_required
def mapel_siap(mapel_id):
    _cek_admin()
    mapel = db.session.get(Mapel, mapel_id)
    if mapel is None:
        raise ValidationError('Mapel tidak ditemukan', 404)
    if Soal.query.filter_by(id_mapel=mapel.id).count() == 0:
        raise ValidationError('Mapel belum punya soal')

    mapel.status_mapel = STATUS_MAPEL_SIAP
    db.session.commit()
    current_app.extensions['agenda_cache'].invalidate()
    return jsonify(_regenerate(mapel.id_agenda))


@bp.route('/regenerate-mapping/<int:agenda_id>', methods=['POST'])
@login_required
def regenerate_mapping(agenda_id):
    _cek_admin()
    if db.session.get(Agenda, agenda_id) is None:
        raise ValidationError('Agenda tidak ditemukan', 404)
    return jsonify(_regenerate(agenda_id))
