import logging
from datetime import datetime

from flask import Blueprint, jsonify

from ..errors import ValidationError, require_fields
from ..gabungan import soal_terurut
from ..models import db, Agenda, Mapel, Peserta, STATUS_MAPEL_SIAP, STATUS_PESERTA_AKTIF
from ..store import transient_retry
from .ujian_routes import _as_int, _json

logger = logging.getLogger(__name__)

bp = Blueprint('offline', __name__)

PACKAGE_VERSION = '1.0'

PESAN_STATUS = {
    'available': 'Package tersedia',
    'not_started': 'Agenda belum dimulai',
    'ended': 'Agenda sudah berakhir',
}


def _status_waktu(agenda, now):
    if now < agenda.tgljam_mulai:
        return 'not_started'
    if now > agenda.tgljam_selesai:
        return 'ended'
    return 'available'


def _tambah_gambar(soal_list, urls):
    for soal in soal_list:
        url = (soal.get('gambar_url') or '').strip()
        if url and url not in urls:
            urls.append(url)


def _mapel_siap(agenda_id):
    return (
        Mapel.query
        .filter_by(id_agenda=agenda_id, status_mapel=STATUS_MAPEL_SIAP)
        .order_by(Mapel.id)
        .all()
    )


@transient_retry
def _bangun_paket(agenda_id):
    agenda = db.session.get(Agenda, agenda_id)
    if agenda is None:
        raise ValidationError('Agenda tidak ditemukan', 404)
    if datetime.now() > agenda.tgljam_selesai:
        raise ValidationError('Agenda sudah berakhir')

    mapel_list = _mapel_siap(agenda_id)

    questions_by_mapel = {}
    image_urls = []
    for mapel in mapel_list:
        soal_list = [s.to_dict() for s in soal_terurut(mapel.id)]
        questions_by_mapel[str(mapel.id)] = soal_list
        _tambah_gambar(soal_list, image_urls)

    # hash password ikut dikirim untuk validasi login offline
    peserta_list = [
        {
            'id': p.id,
            'nama': p.nama_peserta,
            'username': p.nis_username,
            'password_hash': p.password,
            'kelas': p.kelas,
            'sekolah': p.asal_sekolah,
        }
        for p in Peserta.query.filter_by(id_agenda=agenda_id, status=STATUS_PESERTA_AKTIF).all()
    ]

    total_questions = sum(len(q) for q in questions_by_mapel.values())
    return {
        'agenda': agenda.to_dict(with_token=True),
        'mapel_list': [m.to_dict() for m in mapel_list],
        'questions_by_mapel': questions_by_mapel,
        'peserta_list': peserta_list,
        'image_urls': image_urls,
        'metadata': {
            'package_version': PACKAGE_VERSION,
            'generated_at': datetime.now().isoformat(),
            'valid_until': agenda.tgljam_selesai.isoformat(),
            'total_mapel': len(mapel_list),
            'total_questions': total_questions,
            'total_images': len(image_urls),
        },
    }


# ==================== PAKET UJIAN OFFLINE ====================
@bp.route('/exam-package/<int:agenda_id>')
def exam_package(agenda_id):
    paket = _bangun_paket(agenda_id)
    meta = paket['metadata']
    logger.info('[OFFLINE-PACKAGE] Agenda %s: %d soal, %d gambar, %d peserta',
                agenda_id, meta['total_questions'], meta['total_images'], len(paket['peserta_list']))
    return jsonify({
        'success': True,
        'data': paket,
        'agenda_name': paket['agenda']['agenda_ujian'],
        'download_time': datetime.now().isoformat(),
    })


# ==================== VALIDASI SEBELUM UNDUH ====================
@transient_retry
def _cek_akses(agenda_id, user_id, username):
    if user_id:
        peserta = db.session.get(Peserta, _as_int(user_id, 'user_id'))
    else:
        peserta = Peserta.query.filter_by(nis_username=str(username).strip()).first()
    if peserta is None:
        raise ValidationError('User tidak ditemukan', 404)
    if peserta.status != STATUS_PESERTA_AKTIF:
        raise ValidationError('Akun tidak aktif', 403)
    if peserta.id_agenda != agenda_id:
        raise ValidationError('User tidak terdaftar di agenda ini', 403)

    agenda = db.session.get(Agenda, agenda_id)
    if agenda is None:
        raise ValidationError('Agenda tidak ditemukan', 404)
    return peserta.id, agenda


@bp.route('/validate-package-access', methods=['POST'])
def validate_package_access():
    data = _json()
    if not data.get('agenda_id') or not (data.get('user_id') or data.get('username')):
        raise ValidationError('agenda_id dan user_id/username diperlukan')
    agenda_id = _as_int(data['agenda_id'], 'agenda_id')
    user_id, agenda = _cek_akses(agenda_id, data.get('user_id'), data.get('username'))

    now = datetime.now()
    status = _status_waktu(agenda, now)
    return jsonify({
        'success': True,
        'valid': status == 'available',
        'status': status,
        'message': PESAN_STATUS[status],
        'user_id': user_id,
        'agenda_id': agenda_id,
        'timeline': {
            'now': now.isoformat(),
            'starts_at': agenda.tgljam_mulai.isoformat(),
            'ends_at': agenda.tgljam_selesai.isoformat(),
            'starts_in': int((agenda.tgljam_mulai - now).total_seconds()),
            'ends_in': int((agenda.tgljam_selesai - now).total_seconds()),
        },
    })


@transient_retry
def _agenda(agenda_id):
    agenda = db.session.get(Agenda, agenda_id)
    if agenda is None:
        raise ValidationError('Agenda tidak ditemukan', 404)
    return agenda


@bp.route('/validate-offline-token', methods=['POST'])
def validate_offline_token():
    data = _json()
    require_fields(data, ['agenda_id', 'token'])
    agenda = _agenda(_as_int(data['agenda_id'], 'agenda_id'))

    token_valid = str(agenda.token_ujian or '').strip().upper() == str(data['token']).strip().upper()
    now = datetime.now()
    status = _status_waktu(agenda, now)
    return jsonify({
        'success': True,
        'token_valid': token_valid,
        'time_status': 'valid' if status == 'available' else status,
        'agenda_time': {
            'start': agenda.tgljam_mulai.isoformat(),
            'end': agenda.tgljam_selesai.isoformat(),
            'now': now.isoformat(),
        },
        'message': 'Token valid' if token_valid else 'Token tidak valid',
    })


# ==================== DAFTAR GAMBAR ====================
@transient_retry
def _gambar_agenda(agenda_id):
    urls = []
    for mapel in _mapel_siap(agenda_id):
        _tambah_gambar([s.to_dict() for s in soal_terurut(mapel.id)], urls)
    return urls


@bp.route('/get-image-urls', methods=['POST'])
def get_image_urls():
    data = _json()
    require_fields(data, ['agenda_id'])
    urls = _gambar_agenda(_as_int(data['agenda_id'], 'agenda_id'))
    return jsonify({'success': True, 'image_urls': urls, 'count': len(urls)})
