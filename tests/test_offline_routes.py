from datetime import datetime, timedelta

from cbt_ujian.models import db, Peserta, Soal


def _akses(client, **body):
    return client.post("/api-offline/validate-package-access", json=body)


def test_package_access_for_registered_participant(client, seed):
    data = seed()

    by_username = _akses(client, agenda_id=data.agenda_id, username="budi01").get_json()
    by_id = _akses(client, agenda_id=data.agenda_id, user_id=data.peserta_id).get_json()

    assert by_username["valid"] is True
    assert by_username["status"] == "available"
    assert by_username["user_id"] == data.peserta_id
    assert by_username["timeline"]["ends_in"] > 0
    assert by_id["user_id"] == data.peserta_id


def test_package_access_rejections(app, client, seed):
    data = seed()
    lain = seed(username="lama01")

    assert _akses(client, agenda_id=data.agenda_id).status_code == 400
    assert _akses(client, agenda_id=data.agenda_id, username="siapa").status_code == 404

    salah_agenda = _akses(client, agenda_id=lain.agenda_id, username="budi01")
    assert salah_agenda.status_code == 403
    assert salah_agenda.get_json()["message"] == "User tidak terdaftar di agenda ini"

    with app.app_context():
        db.session.get(Peserta, data.peserta_id).status = "Nonaktif"
        db.session.commit()
    nonaktif = _akses(client, agenda_id=data.agenda_id, username="budi01")
    assert nonaktif.status_code == 403
    assert nonaktif.get_json()["message"] == "Akun tidak aktif"


def test_package_access_reports_agenda_not_started(client, seed):
    data = seed(mulai=datetime.now() + timedelta(hours=1), selesai=datetime.now() + timedelta(hours=3))
    body = _akses(client, agenda_id=data.agenda_id, username="budi01").get_json()

    assert body["success"] is True
    assert body["valid"] is False
    assert body["status"] == "not_started"
    assert body["message"] == "Agenda belum dimulai"


def test_validate_offline_token(client, seed):
    data = seed(token="Qw3Rty")
    ended = seed(mulai=datetime.now() - timedelta(days=2), selesai=datetime.now() - timedelta(days=1),
                 username="lama01")

    ok = client.post("/api-offline/validate-offline-token", json={"agenda_id": data.agenda_id, "token": " qw3rty "})
    assert ok.get_json()["token_valid"] is True
    assert ok.get_json()["time_status"] == "valid"

    salah = client.post("/api-offline/validate-offline-token", json={"agenda_id": data.agenda_id, "token": "x"})
    assert salah.get_json()["token_valid"] is False
    assert salah.get_json()["message"] == "Token tidak valid"

    lewat = client.post("/api-offline/validate-offline-token", json={"agenda_id": ended.agenda_id, "token": "ABC123"})
    assert lewat.get_json()["time_status"] == "ended"

    assert client.post("/api-offline/validate-offline-token", json={"agenda_id": 999, "token": "A"}).status_code == 404
    kosong = client.post("/api-offline/validate-offline-token", json={"agenda_id": data.agenda_id})
    assert kosong.status_code == 400
    assert kosong.get_json()["message"] == 'Field "token" wajib diisi'


def test_get_image_urls_lists_each_image_once(app, client, seed):
    data = seed(soal_per_mapel=(2, 1))
    with app.app_context():
        for soal_id, url in zip(data.soal_ids[data.mapel_ids[0]], ["http://img/a.png", " http://img/a.png "]):
            db.session.get(Soal, soal_id).gambar_url = url
        db.session.get(Soal, data.soal_ids[data.mapel_ids[1]][0]).gambar_url = "http://img/b.png"
        db.session.commit()

    body = client.post("/api-offline/get-image-urls", json={"agenda_id": data.agenda_id}).get_json()
    assert body == {"success": True, "image_urls": ["http://img/a.png", "http://img/b.png"], "count": 2}

    kosong = client.post("/api-offline/get-image-urls", json={"agenda_id": 999}).get_json()
    assert kosong["image_urls"] == []


def test_exam_package_carries_statement_fields(app, client, seed):
    data = seed(soal_per_mapel=(1,))
    mid = data.mapel_ids[0]
    with app.app_context():
        soal = db.session.get(Soal, data.soal_ids[mid][0])
        soal.type_soal = "menjodohkan"
        soal.pernyataan_kiri_1 = "Ibu kota Jawa Barat"
        soal.pernyataan_kanan_1 = "Bandung"
        db.session.commit()

    paket = client.get(f"/api-offline/exam-package/{data.agenda_id}").get_json()["data"]
    soal = paket["questions_by_mapel"][str(mid)][0]

    assert soal["pernyataan_kiri_1"] == "Ibu kota Jawa Barat"
    assert soal["pernyataan_kanan_1"] == "Bandung"
    assert soal["pernyataan_8"] is None
