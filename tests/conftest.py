import json
import sys
from datetime import datetime, timedelta
from pathlib import Path
from types import SimpleNamespace

import pytest
import requests
from werkzeug.security import generate_password_hash

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from cbt_ujian.app import create_app  # noqa: E402
from cbt_ujian.models import db, Agenda, Mapel, Soal, Peserta, STATUS_MAPEL_SIAP  # noqa: E402
from cbt_ujian.offline import OfflineCache, OfflineSettings  # noqa: E402


@pytest.fixture
def app(tmp_path):
    app = create_app(
        SQLALCHEMY_DATABASE_URI=f"sqlite:///{tmp_path / 'cbt_test.db'}",
        SECRET_KEY="test-secret",
        TESTING=True,
        STORE_RETRY_BACKOFF=0,
        AGENDA_CACHE_TTL=0,
    )
    yield app
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def seed(app):
    """Buat satu agenda aktif dengan mapel "Siap" dan satu peserta.

    ``soal_per_mapel`` berisi jumlah soal tiap mapel, urut id mapel.
    """
    def _seed(soal_per_mapel=(2, 2), token="ABC123", mulai=None, selesai=None, username="budi01"):
        now = datetime.now()
        with app.app_context():
            agenda = Agenda(
                agenda_ujian="PAS Ganjil",
                tgljam_mulai=mulai or now - timedelta(hours=1),
                tgljam_selesai=selesai or now + timedelta(hours=2),
                token_ujian=token,
            )
            db.session.add(agenda)
            db.session.flush()

            mapel_ids = []
            soal_ids = {}
            for i, jumlah in enumerate(soal_per_mapel, start=1):
                mapel = Mapel(
                    id_agenda=agenda.id,
                    nama_mata_pelajaran=f"Mapel {i}",
                    jumlah_soal=jumlah,
                    status_mapel=STATUS_MAPEL_SIAP,
                )
                db.session.add(mapel)
                db.session.flush()
                ids = []
                for no in range(1, jumlah + 1):
                    soal = Soal(
                        id_mapel=mapel.id,
                        no_soal=no,
                        pertanyaan=f"Soal {no} mapel {i}",
                        pilihan_a="A",
                        pilihan_b="B",
                        pilihan_c="C",
                        pilihan_d="D",
                    )
                    db.session.add(soal)
                    db.session.flush()
                    ids.append(soal.id)
                mapel_ids.append(mapel.id)
                soal_ids[mapel.id] = ids

            peserta = Peserta(
                nama_peserta="BUDI",
                nis_username=username,
                password=generate_password_hash("rahasia"),
                kelas="XII IPA 1",
                asal_sekolah="SMA 1",
                no_wa_peserta=f"08{abs(hash(username)) % 10 ** 9}",
                id_agenda=agenda.id,
            )
            db.session.add(peserta)
            db.session.commit()
            return SimpleNamespace(
                agenda_id=agenda.id,
                mapel_ids=mapel_ids,
                soal_ids=soal_ids,
                peserta_id=peserta.id,
            )
    return _seed


# ==================== FAKE UNTUK KLIEN OFFLINE ====================
BASE_URL = "http://cbt.test"


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeResponse:
    def __init__(self, status_code, content, content_type="application/json"):
        self.status_code = status_code
        self.content = content
        self.headers = {"Content-Type": content_type}

    def json(self):
        return json.loads(self.content)


class FlaskSession:
    """Pengganti requests.Session yang meneruskan request ke Flask test client."""

    def __init__(self, client):
        self.client = client
        self.online = True
        self.calls = []
        self.images = {}

    def request(self, method, url, timeout=None, json=None, params=None):
        path = url[len(BASE_URL):]
        self.calls.append((method, path))
        if not self.online:
            raise requests.ConnectionError("jaringan mati")
        resp = self.client.open(path, method=method, json=json, query_string=params)
        return FakeResponse(resp.status_code, resp.get_data(), resp.headers.get("Content-Type"))

    def get(self, url, timeout=None):
        self.calls.append(("GET", url))
        if not self.online:
            raise requests.ConnectionError("jaringan mati")
        if url not in self.images:
            return FakeResponse(404, b"", "text/plain")
        return FakeResponse(200, self.images[url], "image/png")

    def close(self):
        pass

    def posted(self, path):
        return [p for m, p in self.calls if m == "POST" and p == path]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport(client):
    return FlaskSession(client)


@pytest.fixture
def make_cache(tmp_path, transport, clock):
    """Buat OfflineCache baru di direktori yang sama (simulasi aplikasi dibuka ulang)."""
    opened = []

    def _make(**overrides):
        options = {
            "base_url": BASE_URL,
            "data_dir": str(tmp_path / "klien"),
            "sync_backoff_base": 1.0,
            "sync_max_retries": 3,
        }
        options.update(overrides)
        cache = OfflineCache(settings=OfflineSettings(**options), session=transport, clock=clock)
        opened.append(cache)
        return cache

    yield _make
    for cache in opened:
        cache.close()
