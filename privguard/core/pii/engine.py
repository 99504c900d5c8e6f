from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from privguard.core.config.models import PIIConfig
from privguard.core.errors import PIIProcessingError
from privguard.core.logger import get_logger
from privguard.core.pii.anonymizers import Anonymizer, TokenizeAnonymizer, default_anonymizers
from privguard.core.pii.detectors import PIIDetector, default_detectors
from privguard.core.pii.models import AnonymizationMethod, PIIClassification, PIIScanResult, PIIType, method_for
from privguard.core.pii.vault import TokenVault


class PIIEngine:
    """
    Field-level PII classification and anonymization over flat records.

    Detectors run in list order; a later detector replaces the current best
    only with a strictly higher confidence.
    """

    def __init__(
        self,
        *,
        cfg: Optional[PIIConfig] = None,
        detectors: Optional[Sequence[PIIDetector]] = None,
        anonymizers: Optional[Dict[AnonymizationMethod, Anonymizer]] = None,
        vault: Optional[TokenVault] = None,
        logger: Any = None,
    ):
        self.cfg = cfg or PIIConfig()
        self.detectors: List[PIIDetector] = list(detectors) if detectors is not None else default_detectors()
        self.vault = vault
        self.anonymizers: Dict[AnonymizationMethod, Anonymizer] = anonymizers or default_anonymizers(salt=self.cfg.hash_salt, vault=vault)
        self.methods: Dict[PIIType, AnonymizationMethod] = {}
        self.logger = get_logger("pii", logger)
        self._scan_fields = {str(f).strip().lower() for f in (self.cfg.scan_fields or []) if str(f).strip()}

    @property
    def enabled(self) -> bool:
        return bool(self.cfg.enabled)

    def register_detector(self, detector: PIIDetector, *, first: bool = False) -> None:
        if first:
            self.detectors.insert(0, detector)
        else:
            self.detectors.append(detector)

    def set_method(self, pii_type: PIIType, method: AnonymizationMethod) -> None:
        if method not in self.anonymizers:
            raise ValueError(f"no anonymizer registered for method {method.value}")
        self.methods[pii_type] = method

    def method_for(self, pii_type: PIIType) -> AnonymizationMethod:
        return self.methods.get(pii_type) or method_for(pii_type)

    def _in_scope(self, field_name: str) -> bool:
        if not self._scan_fields:
            return True
        return str(field_name).strip().lower() in self._scan_fields

    def classify(self, field_name: str, value: Any) -> Optional[PIIClassification]:
        best: Optional[Tuple[PIIDetector, float, Dict[str, str]]] = None
        for det in self.detectors:
            matched, confidence, evidence = det.detect(field_name, value)
            if not matched:
                continue
            if best is None or confidence > best[1]:
                best = (det, float(confidence), dict(evidence or {}))
        if best is None or best[1] < float(self.cfg.confidence_threshold):
            return None
        det, confidence, evidence = best
        return PIIClassification(
            field_name=str(field_name),
            pii_type=det.pii_type,
            sensitivity=det.sensitivity(),
            confidence=confidence,
            anonymization_method=self.method_for(det.pii_type),
            evidence=evidence,
        )

    def anonymize(self, pii_type: PIIType, value: Any, *, field_name: str = "") -> Any:
        method = self.method_for(pii_type)
        anon = self.anonymizers.get(method)
        if anon is None:
            raise PIIProcessingError("No anonymizer for PII type.", pii_type=pii_type.value, method=method.value)
        try:
            return anon.anonymize(value, {"pii_type": pii_type.value, "field_name": field_name})
        except Exception as e:  # noqa: BLE001
            raise PIIProcessingError(
                "Anonymization failed.",
                field_name=field_name,
                pii_type=pii_type.value,
                method=method.value,
                error=type(e).__name__,
            ) from e

    def process_record(self, record: Mapping[str, Any]) -> Tuple[Dict[str, Any], List[PIIClassification]]:
        """
        Classify every non-null field and, with auto_mask on, replace matches.

        Returns a new dict; the input is not mutated. Raises PIIProcessingError
        if a matched value cannot be anonymized, so raw values never pass through
        a failed mask.
        """
        if not isinstance(record, Mapping):
            raise PIIProcessingError("Record must be a mapping.", got=type(record).__name__)
        out: Dict[str, Any] = dict(record)
        if not self.enabled:
            return out, []
        found: List[PIIClassification] = []
        for field_name, value in record.items():
            if value is None or not self._in_scope(field_name):
                continue
            cls = self.classify(str(field_name), value)
            if cls is None:
                continue
            found.append(cls)
            if self.cfg.auto_mask:
                out[field_name] = self.anonymize(cls.pii_type, value, field_name=str(field_name))
        if found:
            self.logger.info(
                "PII detected: "
                + ", ".join(f"{c.field_name}={c.pii_type.value}@{c.confidence:.2f}" for c in found)
            )
        return out, found

    def scan(self, record: Mapping[str, Any]) -> PIIScanResult:
        result = PIIScanResult(total_fields=len(record or {}))
        if not self.enabled:
            return result
        for field_name, value in (record or {}).items():
            if value is None or not self._in_scope(field_name):
                continue
            cls = self.classify(str(field_name), value)
            if cls is None:
                continue
            result.detected_fields.append(str(field_name))
            result.classifications[str(field_name)] = cls
        result.pii_fields = len(result.detected_fields)
        return result

    def detokenize(self, token: str) -> Optional[str]:
        anon = self.anonymizers.get(AnonymizationMethod.TOKENIZE)
        if isinstance(anon, TokenizeAnonymizer):
            return anon.detokenize(token)
        return None

    def health_check(self) -> Dict[str, Any]:
        tok = self.anonymizers.get(AnonymizationMethod.TOKENIZE)
        return {
            "ok": True,
            "enabled": self.enabled,
            "detectors": [d.pii_type.value for d in self.detectors],
            "anonymizers": sorted(m.value for m in self.anonymizers),
            "confidence_threshold": float(self.cfg.confidence_threshold),
            "auto_mask": bool(self.cfg.auto_mask),
            "tokenization_reversible": bool(tok.is_reversible()) if tok is not None else False,
        }
