import logging

from flask import Flask, jsonify
from flask_login import LoginManager
from sqlalchemy import event
from werkzeug.security import generate_password_hash
from waitress import serve

from .agenda_cache import AgendaCache
from .config import Config
from .errors import ConfigError, register_error_handlers
from .gabungan import CombinedAnswerAggregator, SoalMappingIndex
from .models import db, User

logger = logging.getLogger(__name__)


def create_app(config_object=Config, **overrides):
    app = Flask(__name__)
    app.config.from_object(config_object)
    app.config.update(overrides)

    if not app.config.get('SQLALCHEMY_DATABASE_URI'):
        raise ConfigError('SQLALCHEMY_DATABASE_URI / DATABASE_URL kosong')
    if not app.config.get('SECRET_KEY'):
        raise ConfigError('SECRET_KEY kosong')

    logging.basicConfig(
        level=app.config.get('LOG_LEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )

    db.init_app(app)

    # === AKTIFKAN FOREIGN KEYS DI SQLITE (HARUS DI DALAM app_context!) ===
    with app.app_context():
        if db.engine.dialect.name == 'sqlite':
            @event.listens_for(db.engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys = ON")
                cursor.close()

    login_manager = LoginManager(app)

    @login_manager.user_loader
    def load_user(id):
        return db.session.get(User, int(id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'success': False, 'message': 'Silakan login sebagai admin terlebih dahulu.'}), 401

    app.extensions['agenda_cache'] = AgendaCache(app.config['AGENDA_CACHE_TTL'])
    app.extensions['gabungan'] = CombinedAnswerAggregator(
        SoalMappingIndex(), cas_retry=app.config['GABUNGAN_CAS_RETRY'])

    # Import blueprint
    from .routes.ujian_routes import bp as ujian_bp
    from .routes.offline_routes import bp as offline_bp
    from .routes.admin_routes import bp as admin_bp

    app.register_blueprint(ujian_bp, url_prefix='/api')
    app.register_blueprint(offline_bp, url_prefix='/api-offline')
    app.register_blueprint(admin_bp, url_prefix='/admin')

    register_error_handlers(app)

    # ==========================================
    # BUAT DATABASE + ADMIN DEFAULT
    # ==========================================
    with app.app_context():
        db.create_all()
        username = app.config['ADMIN_USERNAME']
        if not User.query.filter_by(username=username, role='admin').first():
            db.session.add(User(
                username=username,
                password=generate_password_hash(app.config['ADMIN_PASSWORD']),
                role='admin',
                nama='Administrator'
            ))
            db.session.commit()
            logger.info('Admin default dibuat -> username: %s', username)

    return app


def main():
    app = create_app()
    logger.info('Server CBT Ujian Online berjalan di port %s', app.config['PORT'])
    serve(app, host='0.0.0.0', port=app.config['PORT'], threads=app.config['WAITRESS_THREADS'])


if __name__ == '__main__':
    main()
