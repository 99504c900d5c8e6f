from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from privguard.core.config.io import load_json_object, write_json_atomic
from privguard.core.config.models import DAY, YEAR, MappingConfig
from privguard.core.errors import FieldNotMappedError, ValidationError
from privguard.core.logger import get_logger
from privguard.core.mapping.models import (
    AccessPattern,
    DataDestination,
    DataInventoryItem,
    DataMapping,
    DataSource,
    FieldDataType,
    MappingViolation,
    RetentionRule,
    ViolationSeverity,
)
from privguard.core.pii.models import PIISensitivity, PIIType
from privguard.core.rights import iso

_SENSITIVE = (PIISensitivity.CONFIDENTIAL, PIISensitivity.RESTRICTED)


def default_mappings() -> Dict[str, DataMapping]:
    return {
        "email": DataMapping(
            field_name="email",
            data_type=FieldDataType.STRING,
            pii_type=PIIType.EMAIL,
            sensitivity=PIISensitivity.CONFIDENTIAL,
            purposes=["authentication", "communication"],
            retention=RetentionRule(category="user_data", retention_period=2 * YEAR, delete_after=7 * YEAR),
        ),
        "phone": DataMapping(
            field_name="phone",
            data_type=FieldDataType.STRING,
            pii_type=PIIType.PHONE,
            sensitivity=PIISensitivity.CONFIDENTIAL,
            purposes=["communication", "verification"],
            retention=RetentionRule(category="contact_data", retention_period=2 * YEAR),
        ),
        "cpf": DataMapping(
            field_name="cpf",
            data_type=FieldDataType.STRING,
            pii_type=PIIType.CPF,
            sensitivity=PIISensitivity.RESTRICTED,
            purposes=["identification", "compliance"],
            retention=RetentionRule(category="identity_data", retention_period=5 * YEAR, legal_hold=True),
        ),
    }


def _period_label(seconds: int) -> str:
    if seconds % YEAR == 0:
        return f"{seconds // YEAR}y"
    if seconds % DAY == 0:
        return f"{seconds // DAY}d"
    return f"{seconds}s"


class DataMapper:
    """
    In-process field map and data inventory.

    With a snapshot path, state is loaded at start and rewritten atomically
    after every change. A missing or unreadable snapshot starts from the
    default mappings.
    """

    def __init__(
        self,
        *,
        cfg: Optional[MappingConfig] = None,
        snapshot_path: Optional[str] = None,
        logger: Any = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg or MappingConfig()
        self.snapshot_path = snapshot_path
        self.logger = get_logger("mapping", logger)
        self.clock = clock
        self._lock = threading.RLock()
        self._fields: Dict[str, DataMapping] = {}
        self._inventory: Dict[str, DataInventoryItem] = {}
        if not self._load_snapshot() and self.cfg.default_mappings:
            now = self.clock()
            for name, m in default_mappings().items():
                self._fields[name] = m.model_copy(update={"created_at": now, "updated_at": now})
            self.logger.info(f"Default data mappings initialized: {len(self._fields)}")

    @property
    def enabled(self) -> bool:
        return bool(self.cfg.enabled)

    # ---- persistence ----
    def _load_snapshot(self) -> bool:
        if not self.snapshot_path:
            return False
        loaded = load_json_object(self.snapshot_path)
        if not loaded.ok:
            if loaded.error != "missing":
                self.logger.warning(f"Data map snapshot unusable ({loaded.error}); starting from defaults")
            return False
        try:
            fields = {str(k): DataMapping.model_validate(v) for k, v in dict(loaded.data.get("mappings") or {}).items()}
            items = [DataInventoryItem.model_validate(v) for v in list(loaded.data.get("inventory") or [])]
        except PydanticValidationError as e:
            self.logger.warning(f"Data map snapshot invalid ({e.error_count()} errors); starting from defaults")
            return False
        self._fields = fields
        self._inventory = {i.id: i for i in items}
        return True

    def _persist(self) -> None:
        if not self.snapshot_path:
            return
        data = {
            "mappings": {k: v.model_dump(mode="json") for k, v in self._fields.items()},
            "inventory": [i.model_dump(mode="json") for i in self._inventory.values()],
        }
        try:
            write_json_atomic(self.snapshot_path, data)
        except OSError as e:
            self.logger.error(f"Data map snapshot write failed: {e}")

    # ---- field map ----
    def map_field(self, field_name: str, mapping: Union[DataMapping, Mapping[str, Any], None] = None) -> DataMapping:
        name = str(field_name or "").strip()
        if not name:
            raise ValidationError("field_name is required.")
        try:
            m = mapping if isinstance(mapping, DataMapping) else DataMapping.model_validate(dict(mapping or {}))
        except PydanticValidationError as e:
            raise ValidationError("Invalid data mapping.", field_name=name, errors=e.errors(include_url=False)) from e
        with self._lock:
            now = self.clock()
            prior = self._fields.get(name)
            created = m.created_at or (prior.created_at if prior is not None else 0.0) or now
            out = m.model_copy(update={"field_name": name, "created_at": created, "updated_at": now})
            self._fields[name] = out
            self._persist()
        self.logger.info(
            f"Data field mapped: field={name} pii_type={out.pii_type.value if out.pii_type else '-'} "
            f"sensitivity={out.sensitivity.value if out.sensitivity else '-'}"
        )
        return out.model_copy(deep=True)

    def get_mapping(self, field_name: str) -> Optional[DataMapping]:
        with self._lock:
            m = self._fields.get(str(field_name))
            return m.model_copy(deep=True) if m is not None else None

    def all_mappings(self) -> Dict[str, DataMapping]:
        with self._lock:
            return {k: v.model_copy(deep=True) for k, v in sorted(self._fields.items())}

    def track_data_flow(self, field_name: str, source: DataSource, destination: DataDestination) -> DataMapping:
        name = str(field_name or "").strip()
        if not name:
            raise ValidationError("field_name is required.")
        with self._lock:
            now = self.clock()
            m = self._fields.get(name)
            if m is None:
                m = DataMapping(field_name=name, created_at=now)
            m = m.model_copy(deep=True)
            m.sources.append(source)
            m.destinations.append(destination)
            m.updated_at = now
            self._fields[name] = m
            self._persist()
        self.logger.info(f"Data flow tracked: field={name} source={source.name} destination={destination.name}")
        return m.model_copy(deep=True)

    def record_data_access(self, field_name: str, actor: str, action: str, purpose: str = "") -> AccessPattern:
        """Count one access by (actor, action). Unmapped fields raise FieldNotMappedError."""
        name = str(field_name or "")
        with self._lock:
            m = self._fields.get(name)
            if m is None:
                self.logger.warning(f"Access recorded for unmapped field: {name}")
                raise FieldNotMappedError(name)
            now = self.clock()
            m = m.model_copy(deep=True)
            pattern = next((p for p in m.access_patterns if p.actor == actor and p.action == action), None)
            if pattern is None:
                pattern = AccessPattern(actor=str(actor), action=str(action), purpose=str(purpose or ""), last_access=now)
                m.access_patterns.append(pattern)
            else:
                pattern.last_access = now
                pattern.access_count += 1
            m.updated_at = now
            self._fields[name] = m
            self._persist()
            return pattern.model_copy()

    def mapped_fields(self, names: Iterable[str]) -> List[str]:
        with self._lock:
            return [str(n) for n in names if str(n) in self._fields]

    # ---- inventory ----
    def register_inventory(self, item: Union[DataInventoryItem, Mapping[str, Any]]) -> DataInventoryItem:
        try:
            it = item if isinstance(item, DataInventoryItem) else DataInventoryItem.model_validate(dict(item))
        except PydanticValidationError as e:
            raise ValidationError("Invalid inventory item.", errors=e.errors(include_url=False)) from e
        with self._lock:
            self._inventory[it.id] = it
            self._persist()
        return it.model_copy(deep=True)

    def discover_data_systems(self, system_ids: Iterable[str]) -> List[DataInventoryItem]:
        """Add an inventory item for each registered data system not yet inventoried."""
        added: List[DataInventoryItem] = []
        with self._lock:
            for sid in system_ids:
                sid = str(sid)
                if sid in self._inventory:
                    continue
                it = DataInventoryItem(
                    id=sid,
                    name=sid,
                    description="Registered subject data system",
                    category="subject_data",
                    location=f"hooks://{sid}",
                    last_audit=self.clock(),
                )
                self._inventory[sid] = it
                added.append(it)
            if added:
                self._persist()
        if added:
            self.logger.info(f"Data source discovery completed: sources_discovered={len(added)}")
        return added

    def inventory(self) -> List[DataInventoryItem]:
        with self._lock:
            return [self._inventory[k].model_copy(deep=True) for k in sorted(self._inventory)]

    # ---- reports ----
    def statistics(self) -> Dict[str, Any]:
        by_sensitivity: Dict[str, int] = {}
        by_pii_type: Dict[str, int] = {}
        periods: Dict[str, int] = {}
        pii_fields = 0
        with self._lock:
            mappings = list(self._fields.values())
        for m in mappings:
            key = m.sensitivity.value if m.sensitivity else "unclassified"
            by_sensitivity[key] = by_sensitivity.get(key, 0) + 1
            if m.pii_type is not None:
                pii_fields += 1
                by_pii_type[m.pii_type.value] = by_pii_type.get(m.pii_type.value, 0) + 1
            if m.retention.retention_period > 0:
                label = _period_label(int(m.retention.retention_period))
                periods[label] = periods.get(label, 0) + 1
        return {
            "total_mappings": len(mappings),
            "pii_fields": pii_fields,
            "by_sensitivity": by_sensitivity,
            "by_pii_type": by_pii_type,
            "retention_periods": periods,
        }

    def generate_data_map(self) -> Dict[str, Any]:
        mappings = self.all_mappings()
        items = self.inventory()
        return {
            "generated_at": iso(self.clock()),
            "total_fields": len(mappings),
            "inventory_items": len(items),
            "mappings": {k: v.model_dump(mode="json") for k, v in mappings.items()},
            "inventory": [i.model_dump(mode="json") for i in items],
            "statistics": self.statistics(),
        }

    def validate(self) -> List[MappingViolation]:
        """
        Check every mapped field:
        - PII without a legal basis (high)
        - no retention period (medium)
        - confidential/restricted data without an applied encrypt transformation (critical)
        """
        now = self.clock()
        out: List[MappingViolation] = []
        for name, m in self.all_mappings().items():
            if m.pii_type is not None and not m.legal_basis.strip():
                out.append(
                    MappingViolation(
                        type="missing_legal_basis",
                        field=name,
                        severity=ViolationSeverity.HIGH,
                        description="PII field without legal basis",
                        recommendation="Record the legal basis for processing this field.",
                        detected_at=now,
                    )
                )
            if m.retention.retention_period <= 0:
                out.append(
                    MappingViolation(
                        type="missing_retention_policy",
                        field=name,
                        severity=ViolationSeverity.MEDIUM,
                        description="Field without retention policy",
                        recommendation="Assign a retention period to this field.",
                        detected_at=now,
                    )
                )
            if m.sensitivity in _SENSITIVE and not m.is_encrypted():
                out.append(
                    MappingViolation(
                        type="unencrypted_sensitive_data",
                        field=name,
                        severity=ViolationSeverity.CRITICAL,
                        description="Sensitive data without encryption",
                        recommendation="Encrypt this field at rest.",
                        detected_at=now,
                    )
                )
        return out

    def health_check(self) -> Dict[str, Any]:
        with self._lock:
            fields, items = len(self._fields), len(self._inventory)
        return {
            "status": "healthy",
            "enabled": self.enabled,
            "mappings": fields,
            "inventory_items": items,
            "persistent": bool(self.snapshot_path),
        }
