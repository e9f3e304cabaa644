import threading

from cbt_ujian.gabungan import (
    CombinedAnswerAggregator, KeyedLock, SoalMappingIndex, get_aggregator, pecah_jawaban,
)
from cbt_ujian.models import db, Jawaban, JawabanGabungan, Mapel, Soal, SoalMapping, STATUS_MAPEL_SIAP


def _mapping_tuples(index, agenda_id):
    return [(m.id_mapel, m.id_soal, m.no_soal_mapel, m.no_urut_gabungan) for m in index.all_mappings(agenda_id)]


def test_pecah_jawaban_treats_empty_tokens_as_unanswered():
    assert pecah_jawaban("") == []
    assert pecah_jawaban("A||C") == ["A", "-", "C"]


def test_generate_mapping_is_deterministic(app, seed):
    data = seed(soal_per_mapel=(3, 2, 4))
    with app.app_context():
        index = SoalMappingIndex()
        first = index.generate_mapping(data.agenda_id)
        tuples_first = _mapping_tuples(index, data.agenda_id)
        second = index.generate_mapping(data.agenda_id)
        tuples_second = _mapping_tuples(index, data.agenda_id)

    assert first["success"] and second["success"]
    assert first["mappings"] == second["mappings"]
    assert tuples_first == tuples_second


def test_generate_mapping_covers_every_position_once(app, seed):
    data = seed(soal_per_mapel=(3, 2, 4))
    with app.app_context():
        index = SoalMappingIndex()
        hasil = index.generate_mapping(data.agenda_id)
        urut = [m.no_urut_gabungan for m in SoalMapping.query.filter_by(id_agenda=data.agenda_id).all()]

    assert hasil["total_soal"] == 9
    assert sorted(urut) == list(range(1, 10))


def test_generate_mapping_orders_subjects_by_id_and_questions_by_number(app, seed):
    data = seed(soal_per_mapel=(2, 2))
    with app.app_context():
        index = SoalMappingIndex()
        index.generate_mapping(data.agenda_id)
        rows = index.all_mappings(data.agenda_id)

    expected = [s for mid in data.mapel_ids for s in data.soal_ids[mid]]
    assert [r.id_soal for r in rows] == expected
    assert [r.no_soal_mapel for r in rows] == [1, 2, 1, 2]


def test_questions_without_number_go_last(app, seed):
    data = seed(soal_per_mapel=(0,))
    with app.app_context():
        mid = data.mapel_ids[0]
        tanpa_nomor = Soal(id_mapel=mid, no_soal=None, pertanyaan="tanpa nomor")
        nomor_dua = Soal(id_mapel=mid, no_soal=2, pertanyaan="nomor dua")
        nomor_satu = Soal(id_mapel=mid, no_soal=1, pertanyaan="nomor satu")
        db.session.add_all([tanpa_nomor, nomor_dua, nomor_satu])
        db.session.commit()

        SoalMappingIndex().generate_mapping(data.agenda_id)
        urutan = [
            db.session.get(Soal, m.id_soal).pertanyaan
            for m in SoalMapping.query.filter_by(id_agenda=data.agenda_id).order_by(SoalMapping.no_urut_gabungan)
        ]

    assert urutan == ["nomor satu", "nomor dua", "tanpa nomor"]


def test_generate_mapping_without_ready_subject_changes_nothing(app, seed):
    data = seed(soal_per_mapel=(2,))
    with app.app_context():
        index = SoalMappingIndex()
        index.generate_mapping(data.agenda_id)
        for mapel in Mapel.query.filter_by(id_agenda=data.agenda_id):
            mapel.status_mapel = "Draft"
        db.session.commit()

        hasil = index.generate_mapping(data.agenda_id)
        tersisa = index.total_soal(data.agenda_id)

    assert hasil == {"success": False, "message": "Tidak ada mapel", "total_soal": 0, "mappings": []}
    assert tersisa == 2


def test_ensure_initialized_is_idempotent(app, seed):
    data = seed(soal_per_mapel=(2, 3))
    with app.app_context():
        agg = get_aggregator()
        first = agg.ensure_initialized(data.peserta_id, data.agenda_id)
        row = JawabanGabungan.query.filter_by(id_peserta=data.peserta_id).one()
        snapshot = (row.jawaban, row.total_soal, row.tgljam_update, row.version)

        second = agg.ensure_initialized(data.peserta_id, data.agenda_id)
        db.session.expire_all()
        row = JawabanGabungan.query.filter_by(id_peserta=data.peserta_id).one()

    assert first["created"] is True
    assert first["jawaban_awal"] == "-|-|-|-|-"
    assert second["created"] is False
    assert (row.jawaban, row.total_soal, row.tgljam_update, row.version) == snapshot


def test_apply_writes_only_the_subject_positions(app, seed):
    data = seed(soal_per_mapel=(4, 3))
    mapel_1, mapel_2 = data.mapel_ids
    with app.app_context():
        agg = get_aggregator()
        agg.apply_subject_answers(data.peserta_id, data.agenda_id, mapel_1, "A|B|C|D")
        hasil = agg.apply_subject_answers(data.peserta_id, data.agenda_id, mapel_2, "A|-|C")
        gabungan = agg.get_combined_answer(data.peserta_id, data.agenda_id)

    assert hasil == {"success": True, "updated": 3}
    tokens = gabungan["jawaban_array"]
    assert tokens[4] == "A"
    assert tokens[5] == "-"
    assert tokens[6] == "C"
    assert tokens[:4] == ["A", "B", "C", "D"]


def test_apply_pads_missing_tokens_and_ignores_extra(app, seed):
    data = seed(soal_per_mapel=(3,))
    with app.app_context():
        agg = get_aggregator()
        agg.apply_subject_answers(data.peserta_id, data.agenda_id, data.mapel_ids[0], "A")
        pendek = agg.get_combined_answer(data.peserta_id, data.agenda_id)["jawaban_string"]
        agg.apply_subject_answers(data.peserta_id, data.agenda_id, data.mapel_ids[0], "A|B|C|D|E")
        panjang = agg.get_combined_answer(data.peserta_id, data.agenda_id)["jawaban_string"]

    assert pendek == "A|-|-"
    assert panjang == "A|B|C"


def test_get_combined_answer_absent_returns_none(app, seed):
    data = seed()
    with app.app_context():
        assert get_aggregator().get_combined_answer(data.peserta_id, data.agenda_id) is None


def test_combined_answer_details_point_back_to_questions(app, seed):
    data = seed(soal_per_mapel=(1, 1))
    with app.app_context():
        agg = get_aggregator()
        agg.apply_subject_answers(data.peserta_id, data.agenda_id, data.mapel_ids[1], "E")
        details = agg.get_combined_answer(data.peserta_id, data.agenda_id)["soal_details"]

    assert details[1] == {
        "no_urut": 2,
        "jawaban": "E",
        "id_mapel": data.mapel_ids[1],
        "id_soal": data.soal_ids[data.mapel_ids[1]][0],
        "no_soal_mapel": 1,
    }


def test_row_is_rebuilt_when_mapping_grows(app, seed):
    data = seed(soal_per_mapel=(2,))
    mid = data.mapel_ids[0]
    with app.app_context():
        agg = get_aggregator()
        db.session.add(Jawaban(id_peserta=data.peserta_id, id_agenda=data.agenda_id, id_mapel=mid, jawaban="C|D"))
        db.session.commit()
        agg.apply_subject_answers(data.peserta_id, data.agenda_id, mid, "C|D")

        baru = Mapel(id_agenda=data.agenda_id, nama_mata_pelajaran="Mapel Baru", status_mapel=STATUS_MAPEL_SIAP)
        db.session.add(baru)
        db.session.flush()
        db.session.add(Soal(id_mapel=baru.id, no_soal=1, pertanyaan="soal baru"))
        db.session.commit()
        agg.index.generate_mapping(data.agenda_id)

        agg.apply_subject_answers(data.peserta_id, data.agenda_id, baru.id, "A")
        gabungan = agg.get_combined_answer(data.peserta_id, data.agenda_id)

    assert gabungan["total_soal"] == 3
    assert gabungan["jawaban_string"] == "C|D|A"


def test_rebuild_agenda_recomputes_from_subject_answers(app, seed):
    data = seed(soal_per_mapel=(2, 2))
    mapel_1, mapel_2 = data.mapel_ids
    with app.app_context():
        agg = get_aggregator()
        agg.ensure_initialized(data.peserta_id, data.agenda_id)
        db.session.add_all([
            Jawaban(id_peserta=data.peserta_id, id_agenda=data.agenda_id, id_mapel=mapel_1, jawaban="B|-"),
            Jawaban(id_peserta=data.peserta_id, id_agenda=data.agenda_id, id_mapel=mapel_2, jawaban="-|D"),
        ])
        db.session.commit()

        dibangun = agg.rebuild_agenda(data.agenda_id)
        gabungan = agg.get_combined_answer(data.peserta_id, data.agenda_id)

    assert dibangun == 1
    assert gabungan["jawaban_string"] == "B|-|-|D"


def test_concurrent_updates_for_same_participant_are_not_lost(app, seed):
    data = seed(soal_per_mapel=(3, 3, 3, 3))
    with app.app_context():
        get_aggregator().ensure_initialized(data.peserta_id, data.agenda_id)

    jawaban = {mid: "|".join([huruf] * 3) for mid, huruf in zip(data.mapel_ids, "ABCD")}
    errors = []

    def worker(mid):
        try:
            with app.app_context():
                for _ in range(3):
                    get_aggregator().apply_subject_answers(data.peserta_id, data.agenda_id, mid, jawaban[mid])
        except Exception as e:  # noqa: BLE001
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(mid,)) for mid in data.mapel_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    with app.app_context():
        hasil = get_aggregator().get_combined_answer(data.peserta_id, data.agenda_id)

    assert errors == []
    assert hasil["jawaban_string"] == "A|A|A|B|B|B|C|C|C|D|D|D"


def test_keyed_lock_releases_entries():
    lock = KeyedLock()
    with lock.hold(("p", "a")):
        assert ("p", "a") in lock._locks
    assert lock._locks == {}


def test_aggregator_can_use_its_own_index(app, seed):
    data = seed(soal_per_mapel=(1,))
    with app.app_context():
        agg = CombinedAnswerAggregator(SoalMappingIndex(), cas_retry=1)
        hasil = agg.ensure_initialized(data.peserta_id, data.agenda_id)

    assert hasil["total_soal"] == 1
