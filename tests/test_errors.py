import pytest
from sqlalchemy.exc import OperationalError

from cbt_ujian.app import create_app
from cbt_ujian.errors import ConfigError, UpstreamError
from cbt_ujian.routes import ujian_routes
from cbt_ujian.store import transient_retry


def _db_terkunci():
    return OperationalError("SELECT 1", {}, Exception("database is locked"))


def test_create_app_rejects_empty_database_uri():
    with pytest.raises(ConfigError) as exc:
        create_app(SQLALCHEMY_DATABASE_URI="", SECRET_KEY="test-secret")
    assert exc.value.to_response() == {"success": False, "message": "Server belum dikonfigurasi dengan benar"}


def test_create_app_rejects_empty_secret_key(tmp_path):
    with pytest.raises(ConfigError):
        create_app(SQLALCHEMY_DATABASE_URI=f"sqlite:///{tmp_path / 'x.db'}", SECRET_KEY="")


def test_transient_retry_recovers_after_temporary_errors(app):
    percobaan = []

    @transient_retry
    def baca():
        percobaan.append(1)
        if len(percobaan) < 3:
            raise _db_terkunci()
        return "ok"

    with app.app_context():
        assert baca() == "ok"
    assert len(percobaan) == 3


def test_transient_retry_gives_up_with_upstream_error(app):
    percobaan = []

    @transient_retry
    def baca():
        percobaan.append(1)
        raise _db_terkunci()

    with app.app_context():
        with pytest.raises(UpstreamError) as exc:
            baca()

    assert len(percobaan) == app.config["STORE_RETRY_COUNT"]
    assert isinstance(exc.value.__cause__, OperationalError)


def test_save_retries_locked_database_then_succeeds(client, seed, monkeypatch):
    data = seed(soal_per_mapel=(1,))
    mapel_agenda_asli = ujian_routes._mapel_agenda
    percobaan = []

    def kadang_terkunci(id_agenda, id_mapel):
        percobaan.append(1)
        if len(percobaan) == 1:
            raise _db_terkunci()
        return mapel_agenda_asli(id_agenda, id_mapel)

    monkeypatch.setattr(ujian_routes, "_mapel_agenda", kadang_terkunci)
    resp = client.post("/api/save-jawaban",
                       json={"pid": data.peserta_id, "aid": data.agenda_id, "mid": data.mapel_ids[0], "jwb": "A"})

    assert resp.status_code == 200
    assert resp.get_json()["synced"] is True
    assert len(percobaan) == 2


def test_database_outage_returns_generic_503(client, seed, monkeypatch):
    data = seed(soal_per_mapel=(1,))

    def selalu_terkunci(id_agenda, id_mapel):
        raise _db_terkunci()

    monkeypatch.setattr(ujian_routes, "_mapel_agenda", selalu_terkunci)
    resp = client.post("/api/save-jawaban",
                       json={"pid": data.peserta_id, "aid": data.agenda_id, "mid": data.mapel_ids[0], "jwb": "A"})

    assert resp.status_code == 503
    assert resp.get_json() == {"success": False, "message": "Database sedang tidak tersedia, coba lagi nanti"}
    assert "database is locked" not in resp.get_data(as_text=True)
