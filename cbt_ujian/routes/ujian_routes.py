import logging
import re
from datetime import datetime

from flask import Blueprint, request, jsonify, current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.security import generate_password_hash, check_password_hash

from ..errors import CBTError, ValidationError, require_fields
from ..gabungan import get_aggregator, jawaban_kosong, soal_terurut
from ..models import (
    db, Agenda, Mapel, Peserta, Jawaban,
    STATUS_MAPEL_SIAP, STATUS_PESERTA_AKTIF, STATUS_JAWABAN_PROSES, STATUS_JAWABAN_SELESAI,
)
from ..store import transient_retry

logger = logging.getLogger(__name__)

bp = Blueprint('ujian', __name__)

POLA_USERNAME = re.compile(r'^[0-9A-Za-z_+.-]{3,50}$')


# ==================== HELPER ====================
def _json():
    return request.get_json(silent=True) or {}


def _as_int(value, field):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'Field "{field}" harus berupa angka')


def _mapel_agenda(id_agenda, id_mapel):
    mapel = db.session.get(Mapel, id_mapel)
    if mapel is None or mapel.id_agenda != id_agenda:
        raise ValidationError('Mapel Invalid', 404)
    return mapel


# ==================== AGENDA AKTIF ====================
@transient_retry
def _load_agenda_aktif():
    now = datetime.now()
    rows = Agenda.query.filter(Agenda.tgljam_selesai >= now).order_by(Agenda.tgljam_mulai).all()
    return [a.to_dict() for a in rows]


@bp.route('/agenda')
def agenda():
    data = current_app.extensions['agenda_cache'].get(_load_agenda_aktif)
    return jsonify({'success': True, 'data': data})


# ==================== REGISTER PESERTA ====================
@transient_retry
def _daftar_peserta(form):
    username = str(form['username']).strip()
    no_wa = str(form['no_wa']).strip()
    id_agenda = _as_int(form['agenda_id'], 'agenda_id')

    agenda = db.session.get(Agenda, id_agenda)
    if agenda is None:
        raise ValidationError('Agenda tidak ditemukan')

    cek = Peserta.query.filter(
        db.or_(Peserta.nis_username == username, Peserta.no_wa_peserta == no_wa)
    ).first()
    if cek:
        raise ValidationError('Username/WA sudah terdaftar!')

    peserta = Peserta(
        nama_peserta=str(form['nama']).upper(),
        nis_username=username,
        password=generate_password_hash(str(form['password'])),
        jenjang_studi=str(form['jenjang']),
        kelas=str(form['kelas']),
        asal_sekolah=str(form['sekolah']),
        no_wa_peserta=no_wa,
        no_wa_ortu=str(form['wa_ortu']),
        id_agenda=id_agenda,
        status=STATUS_PESERTA_AKTIF,
    )
    db.session.add(peserta)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError('Username/WA sudah terdaftar!')
    return peserta, agenda


@bp.route('/register', methods=['POST'])
def register():
    form = _json()
    require_fields(form, ['agenda_id', 'nama', 'jenjang', 'kelas', 'sekolah',
                          'no_wa', 'wa_ortu', 'password', 'username'])

    if not POLA_USERNAME.match(str(form['username']).strip()):
        raise ValidationError('Username tidak valid')

    peserta, agenda = _daftar_peserta(form)

    # Inisialisasi jawaban gabungan; gagal di sini tidak membatalkan pendaftaran
    try:
        hasil = get_aggregator().ensure_initialized(peserta.id, agenda.id)
        logger.info('[REGISTER] Jawaban gabungan peserta %s: %s', peserta.id,
                    'Success' if hasil['success'] else hasil.get('message'))
    except (CBTError, SQLAlchemyError) as e:
        db.session.rollback()
        logger.warning('[REGISTER] Inisialisasi jawaban gabungan gagal: %s', e)

    return jsonify({
        'success': True,
        'data': peserta.to_dict(),
        'nama_agenda': agenda.agenda_ujian,
        'token_agenda': agenda.token_ujian or '',
    })


# ==================== LOGIN PESERTA ====================
@bp.route('/login', methods=['POST'])
def login():
    data = _json()
    u = str(data.get('u') or '').strip()
    p = data.get('p')
    if not u or not p:
        raise ValidationError('User & password wajib diisi')

    peserta = Peserta.query.filter(
        db.or_(Peserta.nis_username == u, Peserta.no_wa_peserta == u)
    ).first()
    if peserta is None:
        raise ValidationError('Akun tidak ditemukan', 404)
    if peserta.status != STATUS_PESERTA_AKTIF:
        raise ValidationError('Akun Nonaktif/Blokir', 403)
    if not check_password_hash(peserta.password, str(p)):
        raise ValidationError('Password salah', 401)

    token = ''
    if peserta.id_agenda:
        agenda = db.session.get(Agenda, peserta.id_agenda)
        token = (agenda.token_ujian or '') if agenda else ''

    return jsonify({'success': True, 'data': peserta.to_dict(), 'token_agenda': token})


# ==================== VERIFIKASI TOKEN ====================
@bp.route('/verify-token', methods=['POST'])
def verify_token():
    data = _json()
    require_fields(data, ['agenda_id', 'token'])
    agenda = db.session.get(Agenda, _as_int(data['agenda_id'], 'agenda_id'))
    if agenda is None:
        raise ValidationError('Agenda error')

    if str(agenda.token_ujian or '').strip().upper() != str(data['token']).strip().upper():
        raise ValidationError('Token Salah!')
    return jsonify({'success': True})


# ==================== DAFTAR MAPEL ====================
@bp.route('/mapel')
def mapel():
    id_agenda = _as_int(request.args.get('agenda_id'), 'agenda_id')
    id_peserta = _as_int(request.args.get('peserta_id'), 'peserta_id')

    mapel_list = (
        Mapel.query
        .filter_by(id_agenda=id_agenda, status_mapel=STATUS_MAPEL_SIAP)
        .order_by(Mapel.id)
        .all()
    )
    status_per_mapel = {
        j.id_mapel: j.status
        for j in Jawaban.query.filter_by(id_agenda=id_agenda, id_peserta=id_peserta).all()
    }

    data = []
    for m in mapel_list:
        item = m.to_dict()
        item['status_kerjakan'] = status_per_mapel.get(m.id, 'Belum')
        data.append(item)
    return jsonify({'success': True, 'data': data})


# ==================== AMBIL SOAL ====================
@transient_retry
def _ambil_soal(id_agenda, id_peserta, id_mapel):
    mapel = _mapel_agenda(id_agenda, id_mapel)
    if mapel.status_mapel != STATUS_MAPEL_SIAP:
        raise ValidationError('Mapel belum siap')
    peserta = db.session.get(Peserta, id_peserta)
    if peserta is None:
        raise ValidationError('Peserta tidak ditemukan', 404)

    soal_list = soal_terurut(id_mapel)
    jwb = Jawaban.query.filter_by(id_peserta=id_peserta, id_agenda=id_agenda, id_mapel=id_mapel).first()

    if jwb is None:
        jwb = Jawaban(
            id_peserta=id_peserta,
            id_agenda=id_agenda,
            id_mapel=id_mapel,
            nama_peserta_snap=peserta.nama_peserta,
            nama_agenda_snap=mapel.agenda.agenda_ujian,
            nama_mapel_snap=mapel.nama_mata_pelajaran,
            jawaban=jawaban_kosong(len(soal_list)),
            status=STATUS_JAWABAN_PROSES,
        )
        db.session.add(jwb)
        try:
            db.session.commit()
            status = 'Baru'
        except IntegrityError:
            # permintaan paralel sudah membuat baris yang sama
            db.session.rollback()
            jwb = Jawaban.query.filter_by(id_peserta=id_peserta, id_agenda=id_agenda, id_mapel=id_mapel).first()
            status = 'Lanjut'
    else:
        status = 'Selesai' if jwb.status == STATUS_JAWABAN_SELESAI else 'Lanjut'

    get_aggregator().ensure_initialized(id_peserta, id_agenda)

    return {
        'success': True,
        'status': status,
        'waktu_mulai': jwb.tgljam_mulai.isoformat(),
        'jawaban_sebelumnya': jwb.jawaban or '',
        'mapel_detail': mapel.to_dict(),
        'data_soal': [s.to_dict() for s in soal_list],
    }


@bp.route('/get-soal', methods=['POST'])
def get_soal():
    data = _json()
    require_fields(data, ['agenda_id', 'peserta_id', 'mapel_id'])
    return jsonify(_ambil_soal(
        _as_int(data['agenda_id'], 'agenda_id'),
        _as_int(data['peserta_id'], 'peserta_id'),
        _as_int(data['mapel_id'], 'mapel_id'),
    ))


# ==================== SIMPAN & SELESAI ====================
@transient_retry
def _tulis_jawaban(id_peserta, id_agenda, id_mapel, jawaban, selesai):
    mapel = _mapel_agenda(id_agenda, id_mapel)
    jwb = Jawaban.query.filter_by(id_peserta=id_peserta, id_agenda=id_agenda, id_mapel=id_mapel).first()
    now = datetime.now()

    if jwb is None:
        # klien offline bisa menyimpan sebelum pernah get-soal secara online
        peserta = db.session.get(Peserta, id_peserta)
        if peserta is None:
            raise ValidationError('Peserta tidak ditemukan', 404)
        jwb = Jawaban(
            id_peserta=id_peserta,
            id_agenda=id_agenda,
            id_mapel=id_mapel,
            nama_peserta_snap=peserta.nama_peserta,
            nama_agenda_snap=mapel.agenda.agenda_ujian,
            nama_mapel_snap=mapel.nama_mata_pelajaran,
            tgljam_login=now,
            tgljam_mulai=now,
            status=STATUS_JAWABAN_PROSES,
        )
        db.session.add(jwb)
    elif jwb.status == STATUS_JAWABAN_SELESAI:
        return False

    jwb.jawaban = jawaban
    jwb.last_sync = now
    if selesai:
        jwb.status = STATUS_JAWABAN_SELESAI
        jwb.tgljam_selesai = now
    db.session.commit()
    return True


@transient_retry
def _terapkan_gabungan(id_peserta, id_agenda, id_mapel, jawaban):
    hasil = get_aggregator().apply_subject_answers(id_peserta, id_agenda, id_mapel, jawaban)
    if not hasil['success']:
        logger.warning('[GABUNGAN] Update peserta %s mapel %s tidak lengkap: %s',
                       id_peserta, id_mapel, hasil.get('message'))
    return hasil


def _simpan(selesai):
    data = _json()
    require_fields(data, ['pid', 'aid', 'mid'])
    pid = _as_int(data['pid'], 'pid')
    aid = _as_int(data['aid'], 'aid')
    mid = _as_int(data['mid'], 'mid')
    jwb = str(data.get('jwb') or '')

    if not _tulis_jawaban(pid, aid, mid, jwb, selesai):
        return jsonify({
            'success': True,
            'synced': False,
            'already_submitted': True,
            'message': 'Ujian sudah selesai',
        })

    hasil = _terapkan_gabungan(pid, aid, mid, jwb)
    return jsonify({'success': True, 'synced': True, 'gabungan_updated': hasil.get('updated', 0)})


@bp.route('/save-jawaban', methods=['POST'])
def save_jawaban():
    return _simpan(selesai=False)


@bp.route('/selesai-ujian', methods=['POST'])
def selesai_ujian():
    return _simpan(selesai=True)


# ==================== JAWABAN GABUNGAN ====================
@bp.route('/jawaban-gabungan')
def jawaban_gabungan():
    pid = _as_int(request.args.get('pid'), 'pid')
    aid = _as_int(request.args.get('aid'), 'aid')
    detail = request.args.get('detail', 'false').lower() == 'true'

    hasil = get_aggregator().get_combined_answer(pid, aid)
    if hasil is None:
        return jsonify({'success': False, 'message': 'Jawaban gabungan tidak ditemukan',
                        'jawaban': '', 'total_soal': 0})

    if detail:
        return jsonify({'success': True, **hasil})
    return jsonify({'success': True, 'jawaban': hasil['jawaban_string'], 'total_soal': hasil['total_soal']})


@bp.route('/init-gabungan', methods=['POST'])
def init_gabungan():
    data = _json()
    require_fields(data, ['pid', 'aid'])
    pid = _as_int(data['pid'], 'pid')
    aid = _as_int(data['aid'], 'aid')
    if db.session.get(Peserta, pid) is None:
        raise ValidationError('Peserta tidak ditemukan', 404)

    hasil = transient_retry(get_aggregator().ensure_initialized)(pid, aid)
    if not hasil['success']:
        raise ValidationError(hasil['message'])
    return jsonify({'success': True, 'total_soal': hasil['total_soal'], 'jawaban_awal': hasil['jawaban_awal']})
