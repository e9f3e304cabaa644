import logging
from datetime import datetime

from werkzeug.security import check_password_hash

logger = logging.getLogger(__name__)


class OfflineValidator:
    """Validasi login, token, dan akses mapel dari paket ujian yang sudah diunduh."""

    def __init__(self, cache, now=datetime.now):
        self.cache = cache
        self.now = now
        self.agenda = None
        self.peserta = {}
        self.token = None

    def init(self, agenda_id):
        package = self.cache.get_exam_package(agenda_id)
        if package is None:
            raise LookupError('Paket belum diunduh. Silakan unduh terlebih dahulu.')

        self.agenda = package['agenda']
        self.peserta = {p['username']: p for p in package.get('peserta_list', [])}
        token = (self.agenda.get('token_ujian') or '').strip().upper()
        self.token = token or None
        logger.info('[OFFLINE] Validator agenda %s: %d peserta, token %s',
                    agenda_id, len(self.peserta), 'ada' if self.token else 'kosong')
        return True

    def validate_login(self, username, password):
        if not username or not password:
            return {'valid': False, 'message': 'Username dan password harus diisi'}

        peserta = self.peserta.get(username)
        if peserta is None:
            return {'valid': False, 'message': 'Username tidak terdaftar'}
        if not peserta.get('password_hash') or not check_password_hash(peserta['password_hash'], password):
            return {'valid': False, 'message': 'Password salah'}

        return {
            'valid': True,
            'user': {
                'id': peserta['id'],
                'nama': peserta.get('nama'),
                'username': username,
                'kelas': peserta.get('kelas'),
                'sekolah': peserta.get('sekolah'),
                'agenda_id': self.agenda.get('id'),
            },
            'agenda': self.agenda,
            'message': 'Login berhasil (mode offline)',
        }

    def validate_token(self, token):
        if not token or not isinstance(token, str):
            return {'valid': False, 'message': 'Token harus diisi'}
        valid = self.token is not None and token.strip().upper() == self.token
        return {'valid': valid, 'message': 'Token valid' if valid else 'Token tidak valid'}

    def validate_agenda_time(self):
        if self.agenda is None:
            return {'valid': False, 'status': None, 'message': 'Agenda tidak ditemukan'}

        now = self.now()
        mulai = datetime.fromisoformat(self.agenda['tgljam_mulai'])
        selesai = datetime.fromisoformat(self.agenda['tgljam_selesai'])
        if now < mulai:
            return {'valid': False, 'status': 'not_started', 'message': 'Agenda belum dimulai',
                    'detik_menuju_mulai': int((mulai - now).total_seconds())}
        if now > selesai:
            return {'valid': False, 'status': 'ended', 'message': 'Agenda sudah berakhir'}
        return {'valid': True, 'status': 'active', 'message': 'Agenda sedang berlangsung',
                'sisa_detik': int((selesai - now).total_seconds())}

    def validate_mapel_access(self, mapel_id):
        if self.agenda is None:
            return {'valid': False, 'message': 'Paket tidak ditemukan'}
        package = self.cache.get_exam_package(self.agenda['id'])
        if package is None:
            return {'valid': False, 'message': 'Paket tidak ditemukan'}

        mapel = next((m for m in package.get('mapel_list', []) if str(m['id']) == str(mapel_id)), None)
        if mapel is None:
            return {'valid': False, 'message': 'Mata pelajaran tidak ditemukan'}

        questions = self.cache.get_questions_by_mapel(self.agenda['id'], int(mapel_id))
        if not questions:
            return {'valid': False, 'message': 'Tidak ada soal untuk mata pelajaran ini'}
        return {'valid': True, 'mapel': mapel, 'questions_count': len(questions), 'message': 'Akses mapel valid'}

    def validate_exam_start(self, mapel_id=None, token=None):
        hasil = {'agenda_time': self.validate_agenda_time(), 'token': None, 'mapel_access': None, 'errors': []}
        if not hasil['agenda_time']['valid']:
            hasil['errors'].append(f"Waktu agenda: {hasil['agenda_time']['message']}")

        if token:
            hasil['token'] = self.validate_token(token)
            if not hasil['token']['valid']:
                hasil['errors'].append(f"Token: {hasil['token']['message']}")

        if mapel_id:
            hasil['mapel_access'] = self.validate_mapel_access(mapel_id)
            if not hasil['mapel_access']['valid']:
                hasil['errors'].append(f"Mapel: {hasil['mapel_access']['message']}")

        hasil['overall_valid'] = not hasil['errors']
        return hasil
