"""Jenis error backend CBT dan pemetaannya ke respons JSON."""

import logging

from flask import jsonify
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class CBTError(Exception):
    status_code = 500
    public_message = 'Terjadi kesalahan internal server'

    def __init__(self, message=None, status_code=None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        if status_code is not None:
            self.status_code = status_code

    def to_response(self):
        return {'success': False, 'message': self.message}


class ConfigError(CBTError):
    """Konfigurasi server tidak lengkap. Fatal saat startup."""

    def to_response(self):
        return {'success': False, 'message': 'Server belum dikonfigurasi dengan benar'}


class ValidationError(CBTError):
    """Input salah atau kredensial tidak valid. Tidak pernah di-retry."""
    status_code = 400


class UpstreamError(CBTError):
    """Database gagal setelah semua percobaan ulang."""
    status_code = 503
    public_message = 'Database sedang tidak tersedia, coba lagi nanti'

    def to_response(self):
        return {'success': False, 'message': self.public_message}


def require_fields(data, fields):
    for f in fields:
        value = data.get(f)
        if value is None or str(value).strip() == '':
            raise ValidationError(f'Field "{f}" wajib diisi')


def register_error_handlers(app):
    @app.errorhandler(CBTError)
    def handle_cbt_error(e):
        if e.status_code >= 500:
            logger.error('%s: %s', type(e).__name__, e.message)
        return jsonify(e.to_response()), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        if e.code == 404:
            message = 'Endpoint tidak ditemukan'
        else:
            message = e.description or e.name
        return jsonify({'success': False, 'message': message}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logger.exception('Unhandled error')
        return jsonify({'success': False, 'message': CBTError.public_message}), 500
