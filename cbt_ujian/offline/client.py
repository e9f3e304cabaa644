import logging

import requests

from .settings import OfflineSettings

logger = logging.getLogger(__name__)


class NetworkError(Exception):
    """Server tidak terjangkau, timeout, 5xx, atau respons bukan JSON. Boleh dicoba ulang."""


class RejectedError(Exception):
    """Server menolak permintaan (4xx). Tidak dicoba ulang otomatis."""

    def __init__(self, message, status_code):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class Cancelled(Exception):
    pass


class ApiClient:
    """Klien HTTP ke backend ujian. Semua request memakai timeout pendek."""

    def __init__(self, base_url=None, session=None, settings=None):
        self.settings = settings or OfflineSettings()
        self.base_url = str(base_url or self.settings.BASE_URL).rstrip('/')
        self.session = session or requests.Session()

    def close(self):
        self.session.close()

    def _request(self, method, path, timeout=None, **kwargs):
        url = f'{self.base_url}{path}'
        try:
            resp = self.session.request(method, url, timeout=timeout or self.settings.timeout, **kwargs)
        except requests.RequestException as e:
            raise NetworkError(f'{method} {path}: {e}') from e

        if resp.status_code >= 500:
            raise NetworkError(f'{method} {path}: HTTP {resp.status_code}')
        try:
            data = resp.json()
        except ValueError as e:
            raise NetworkError(f'{method} {path}: respons bukan JSON') from e

        if resp.status_code >= 400 or not isinstance(data, dict):
            message = data.get('message') if isinstance(data, dict) else None
            raise RejectedError(message or f'HTTP {resp.status_code}', resp.status_code)
        return data

    def _post(self, path, payload, **kwargs):
        return self._request('POST', path, json=payload, **kwargs)

    # ==================== ENDPOINT UJIAN ====================
    def ping(self):
        self._request('GET', '/api/agenda')
        return True

    def get_soal(self, agenda_id, peserta_id, mapel_id):
        data = self._post('/api/get-soal', {
            'agenda_id': agenda_id, 'peserta_id': peserta_id, 'mapel_id': mapel_id,
        })
        if not data.get('success'):
            raise RejectedError(data.get('message') or 'Gagal mengambil soal', 200)
        return data

    def save_jawaban(self, payload):
        return self._post('/api/save-jawaban', payload)

    def selesai_ujian(self, payload):
        return self._post('/api/selesai-ujian', payload)

    # ==================== PAKET OFFLINE ====================
    def get_exam_package(self, agenda_id, cancel=None):
        timeout = (self.settings.CONNECT_TIMEOUT, self.settings.PACKAGE_READ_TIMEOUT)
        data = self._request('GET', f'/api-offline/exam-package/{int(agenda_id)}', timeout=timeout)
        if cancel is not None:
            cancel.raise_if_cancelled()
        if not data.get('success') or not isinstance(data.get('data'), dict):
            raise RejectedError(data.get('message') or 'Paket ujian tidak valid', 200)
        return data['data']

    def download_image(self, url):
        """Unduh gambar soal, return (bytes, content_type)."""
        try:
            resp = self.session.get(url, timeout=self.settings.timeout)
        except requests.RequestException as e:
            raise NetworkError(f'GET {url}: {e}') from e
        if resp.status_code >= 500:
            raise NetworkError(f'GET {url}: HTTP {resp.status_code}')
        if resp.status_code >= 400:
            raise RejectedError(f'Gambar tidak tersedia: {url}', resp.status_code)
        return resp.content, resp.headers.get('Content-Type')
