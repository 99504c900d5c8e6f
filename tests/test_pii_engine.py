from __future__ import annotations

import re

import pytest

from privguard.core.config.models import PIIConfig
from privguard.core.crypto import generate_key_bytes
from privguard.core.errors import PIIProcessingError
from privguard.core.pii.anonymizers import GeneralizeAnonymizer, HashAnonymizer, RedactAnonymizer, TokenizeAnonymizer
from privguard.core.pii.engine import PIIEngine
from privguard.core.pii.models import AnonymizationMethod, PIIType
from privguard.core.pii.vault import TokenVault
from tests.helpers.fakes import DummyLogger

HEX64 = re.compile(r"^[0-9a-f]{64}$")


def _engine(**cfg):
    return PIIEngine(cfg=PIIConfig(**cfg), logger=DummyLogger())


def test_hash_is_deterministic_and_salted():
    a = HashAnonymizer("s1")
    assert a.anonymize("x@y.com") == a.anonymize("x@y.com")
    assert a.anonymize("x@y.com") != HashAnonymizer("s2").anonymize("x@y.com")
    assert HEX64.match(a.anonymize("x@y.com"))


def test_redact_and_generalize_short_values():
    r = RedactAnonymizer()
    assert r.anonymize("ab") == "****"
    assert r.anonymize("abc") == "****"
    assert r.anonymize("abcdef") == "ab**ef"
    g = GeneralizeAnonymizer()
    assert g.anonymize("abc") == "***"
    assert g.anonymize("Maria") == "M****"


def test_token_format_and_reversibility_without_vault():
    t = TokenizeAnonymizer()
    tok = t.anonymize("52998224725")
    assert re.match(r"^TKN_[0-9a-f]{16}$", tok)
    assert t.is_reversible() is False
    assert t.detokenize(tok) is None


def test_vault_detokenizes(tmp_path):
    vault = TokenVault(db_path=str(tmp_path / "vault.sqlite"), key=generate_key_bytes(), logger=DummyLogger())
    eng = PIIEngine(cfg=PIIConfig(), vault=vault, logger=DummyLogger())
    out, found = eng.process_record({"cpf": "52998224725"})
    assert out["cpf"].startswith("TKN_")
    assert found[0].anonymization_method == AnonymizationMethod.TOKENIZE
    assert eng.detokenize(out["cpf"]) == "52998224725"
    assert vault.count() == 1
    assert eng.health_check()["tokenization_reversible"] is True


def test_process_record_masks_email_and_keeps_other_fields():
    eng = _engine()
    data = {"email": "maria@example.com", "age": 30}
    out, found = eng.process_record(data)
    assert HEX64.match(out["email"])
    assert out["age"] == 30
    assert [c.field_name for c in found] == ["email"]
    assert data["email"] == "maria@example.com"


def test_classification_never_carries_raw_value():
    eng = _engine()
    _, found = eng.process_record({"email": "maria@example.com"})
    assert "maria@example.com" not in found[0].model_dump_json()


def test_threshold_filters_name_hint_matches():
    eng = _engine(confidence_threshold=0.8)
    assert eng.classify("email_note", "hello") is None
    low = _engine(confidence_threshold=0.5)
    c = low.classify("email_note", "hello")
    assert c is not None and c.pii_type == PIIType.EMAIL


def test_scan_fields_restricts_scanning():
    eng = _engine(scan_fields=["Email"])
    out, found = eng.process_record({"email": "a@b.com", "cpf": "52998224725"})
    assert [c.field_name for c in found] == ["email"]
    assert out["cpf"] == "52998224725"


def test_auto_mask_off_detects_without_masking():
    eng = _engine(auto_mask=False)
    out, found = eng.process_record({"email": "a@b.com"})
    assert out["email"] == "a@b.com"
    assert len(found) == 1


def test_disabled_engine_returns_copy():
    eng = _engine(enabled=False)
    data = {"email": "a@b.com"}
    out, found = eng.process_record(data)
    assert out == data and out is not data
    assert found == []


def test_anonymizer_failure_fails_closed():
    class _Boom:
        method = AnonymizationMethod.HASH

        def anonymize(self, value, context=None):
            raise RuntimeError("boom")

        def is_reversible(self):
            return False

    eng = _engine()
    eng.anonymizers[AnonymizationMethod.HASH] = _Boom()
    with pytest.raises(PIIProcessingError) as ei:
        eng.process_record({"email": "a@b.com"})
    assert "a@b.com" not in str(ei.value.to_dict())


def test_non_mapping_record_rejected():
    with pytest.raises(PIIProcessingError):
        _engine().process_record(["email"])  # type: ignore[arg-type]


def test_set_method_overrides_default():
    eng = _engine()
    eng.set_method(PIIType.EMAIL, AnonymizationMethod.REDACT)
    out, _ = eng.process_record({"email": "maria@example.com"})
    assert out["email"].startswith("ma") and out["email"].endswith("om") and "*" in out["email"]


def test_scan_reports_counts():
    res = _engine().scan({"email": "a@b.com", "ip": "10.0.0.1", "note": "x", "empty": None})
    assert res.total_fields == 4
    assert res.pii_fields == 2
    assert set(res.detected_fields) == {"email", "ip"}
