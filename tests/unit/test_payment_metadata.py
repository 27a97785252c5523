import json

from herd.payments.metadata import (
    clean_student_names,
    extract_metadata_from_session,
    intent_user_id,
    make_metadata,
    transfer_group_for,
)


def test_make_metadata_stringifies_values():
    meta = make_metadata(class_id="c1", user_id="u1", qty=2, student_names=["Ana", "Bo"], hold_id="h1")
    assert meta == {
        "class_id": "c1",
        "user_id": "u1",
        "qty": "2",
        "student_names": json.dumps(["Ana", "Bo"]),
        "transfer_group": "booking_c1_u1",
        "hold_id": "h1",
    }
    assert all(isinstance(v, str) for v in meta.values())


def test_make_metadata_without_hold():
    assert "hold_id" not in make_metadata(class_id="c1", user_id="u1", qty=1, student_names=[])


def test_clean_student_names():
    assert clean_student_names(["  Ana ", "", None, 3, "Bo", "Cy"], 2) == ["Ana", "Bo"]
    assert clean_student_names("Ana", 1) == []


def test_extract_metadata_falls_back_to_intent_metadata():
    session = {
        "metadata": {"class_id": "c1"},
        "payment_intent": {"id": "pi_1", "metadata": {"user_id": "u1", "qty": "3", "class_id": "other"}},
    }
    info = extract_metadata_from_session(session)
    assert info["class_id"] == "c1"
    assert info["user_id"] == "u1"
    assert info["qty"] == 3


def test_extract_metadata_tolerates_garbage():
    info = extract_metadata_from_session({"metadata": {"qty": "x", "student_names": "{not json"}})
    assert info["qty"] == 1
    assert info["student_names"] == []
    assert info["class_id"] is None


def test_intent_user_id():
    assert intent_user_id({"payment_intent": {"metadata": {"user_id": "u9"}}}) == "u9"
    assert intent_user_id({"payment_intent": "pi_123"}) is None
    assert transfer_group_for("c", "u") == "booking_c_u"
