"""
Column types that store the structured ECO payloads as JSON text.

Values on the Python side are always the records from ``eco_payloads``;
whatever shape a caller assigns is coerced on bind, so a row never holds
an untyped blob.
"""

import json

from sqlalchemy import types
from sqlalchemy.types import TypeDecorator

from ecoflow.models.eco_payloads import (
    coerce_compliance_checks,
    coerce_impact_analysis,
    coerce_proposed_changes,
)


class _JSONText(TypeDecorator):
    """Base: JSON-encoded text on every dialect."""

    impl = types.Text
    cache_ok = True

    def _dump(self, value):
        raise NotImplementedError

    def _load(self, data):
        raise NotImplementedError

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        payload = self._dump(value)
        if payload is None:
            return None
        return json.dumps(payload, default=str)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return self._load(json.loads(value))


class FieldChangeList(_JSONText):
    """tuple[FieldChange, ...] ↔ JSON array of tagged records."""

    def _dump(self, value):
        return [item.to_dict() for item in coerce_proposed_changes(value)]

    def _load(self, data):
        return coerce_proposed_changes(data)

    def process_result_value(self, value, dialect):
        if value is None:
            return ()
        return super().process_result_value(value, dialect)


class ImpactAnalysisType(_JSONText):
    """ImpactAnalysis ↔ JSON object."""

    def _dump(self, value):
        record = coerce_impact_analysis(value)
        return record.to_dict() if record is not None else None

    def _load(self, data):
        return coerce_impact_analysis(data)


class ComplianceCheckList(_JSONText):
    """tuple[ComplianceCheck, ...] ↔ JSON array of tagged records."""

    def _dump(self, value):
        return [item.to_dict() for item in coerce_compliance_checks(value)]

    def _load(self, data):
        return coerce_compliance_checks(data)

    def process_result_value(self, value, dialect):
        if value is None:
            return ()
        return super().process_result_value(value, dialect)


class StringList(_JSONText):
    """Plain list of strings (AI key risks)."""

    def _dump(self, value):
        return [str(v) for v in value]

    def _load(self, data):
        if not isinstance(data, list):
            return []
        return [str(v) for v in data]


class FieldDiff(_JSONText):
    """Audit diff ``{field: {"old": ..., "new": ...}}``; unreadable rows load as ``{}``."""

    def _dump(self, value):
        return dict(value)

    def _load(self, data):
        return data if isinstance(data, dict) else {}

    def process_result_value(self, value, dialect):
        if value is None:
            return {}
        try:
            return super().process_result_value(value, dialect)
        except ValueError:
            return {}
