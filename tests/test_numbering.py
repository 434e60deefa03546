import threading

import pytest

from app.doclife.db import session_scope
from app.doclife.errors import Inactive, InvalidLabel, NotFound, SequenceExhausted
from app.doclife.models import User
from app.doclife.modules.document_control import service
from app.doclife.modules.document_control.models import DocumentVersion
from app.doclife.modules.document_control.sequencing import format_document_number
from app.doclife.modules.document_control.versioning import (
    is_valid_label,
    label_ordinal,
    next_label,
    parse_label,
)
from app.doclife.modules.document_types.models import DocumentType
from app.doclife.modules.document_types.service import toggle_document_type


class TestLabels:
    def test_initial_labels(self):
        assert next_label(None, False) == "vA"
        assert next_label(None, True) == "v1"

    def test_prototype_letters(self):
        assert next_label("vA", False) == "vB"
        assert next_label("vY", False) == "vZ"

    def test_production_integers(self):
        assert next_label("v1", True) == "v2"
        assert next_label("v9", True) == "v10"

    def test_overflow_extends_by_default(self):
        assert next_label("vZ", False) == "vAA"
        assert next_label("vAZ", False) == "vBA"

    def test_overflow_error_policy(self):
        with pytest.raises(SequenceExhausted):
            next_label("vZ", False, overflow="error")

    def test_family_mismatch_is_rejected(self):
        with pytest.raises(InvalidLabel):
            next_label("vA", True)
        with pytest.raises(InvalidLabel):
            next_label("v3", False)

    def test_parse_and_order(self):
        assert parse_label("vC") == ("alpha", 3)
        assert parse_label("v12") == ("numeric", 12)
        assert label_ordinal("vAA") > label_ordinal("vZ")

    @pytest.mark.parametrize("label", ["", "A", "v0", "v01", "va", "vA1", "V1", "v-1"])
    def test_malformed_labels(self, label):
        assert not is_valid_label(label)
        with pytest.raises(InvalidLabel):
            parse_label(label)

    def test_family_check(self):
        assert is_valid_label("vB", is_production=False)
        assert not is_valid_label("vB", is_production=True)


def test_document_number_format():
    assert format_document_number("FORM", 1) == "FORM-00001"
    assert format_document_number("SOP", 99999) == "SOP-99999"


def test_numbers_are_sequential_per_type(unit, ids):
    with unit() as s:
        admin = s.get(User, ids.admin)
        first = service.create_document(s, admin, ids.form, {"title": "One"})
        s.commit()
        second = service.create_document(s, admin, ids.form, {"title": "Two"})
        assert (first.document_number, second.document_number) == ("FORM-00001", "FORM-00002")
        assert s.get(DocumentType, ids.form).next_number == 3


def test_number_is_burned_when_the_create_rolls_back(unit, ids):
    with pytest.raises(RuntimeError):
        with unit() as s:
            v = service.create_document(s, s.get(User, ids.admin), ids.form, {"title": "Abandoned"})
            assert v.document_number == "FORM-00001"
            raise RuntimeError("abort")

    with unit() as s:
        assert s.query(DocumentVersion).count() == 0
        assert s.get(DocumentType, ids.form).next_number == 2
        v = service.create_document(s, s.get(User, ids.admin), ids.form, {"title": "Kept"})
        assert v.document_number == "FORM-00002"


def test_concurrent_creates_never_share_a_number(app, ids):
    app.config["ALLOCATE_MAX_RETRIES"] = 10
    results: list[str] = []
    failures: list[BaseException] = []
    lock = threading.Lock()

    def worker(i: int) -> None:
        try:
            with app.app_context(), session_scope(app) as s:
                v = service.create_document(s, s.get(User, ids.author), ids.form, {"title": f"Doc {i}"})
                number = v.document_number
            with lock:
                results.append(number)
        except Exception as e:  # collected and asserted below
            with lock:
                failures.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert failures == []
    assert sorted(results) == [f"FORM-{n:05d}" for n in range(1, 9)]


def test_counter_exhaustion_fails_loudly(unit, ids):
    with unit() as s:
        s.get(DocumentType, ids.form).next_number = 99999

    with unit() as s:
        v = service.create_document(s, s.get(User, ids.admin), ids.form, {"title": "Last one"})
        assert v.document_number == "FORM-99999"

    with pytest.raises(SequenceExhausted):
        with unit() as s:
            service.create_document(s, s.get(User, ids.admin), ids.form, {"title": "One too many"})


def test_inactive_type_refuses_new_documents(unit, ids):
    with unit() as s:
        toggle_document_type(s, s.get(User, ids.admin), ids.form)

    with pytest.raises(Inactive):
        with unit() as s:
            service.create_document(s, s.get(User, ids.admin), ids.form, {"title": "Nope"})


def test_other_tenants_type_is_invisible(unit, ids):
    with pytest.raises(NotFound):
        with unit() as s:
            service.create_document(s, s.get(User, ids.other_admin), ids.form, {"title": "Leak"})
