"""
Data Quality Analyzer

Profiles extracted property records and classifies quality issues.
Runs as a non-fatal pipeline stage: issues are attached to the run, they
never fail it.

Features:
- Per-field statistics (count, missing, min/max/mean/std for numeric fields)
- Missing value, type mismatch, range, pattern and duplicate detection
- Z-score outlier classification
- Explicit insufficient-data result below min_properties_for_stats
- Pass/fail field checks (not_null, range, unique) configured per job

Usage:
    from parcelflow.core.quality import QualityAnalyzer, QualityOptions

    analyzer = QualityAnalyzer()
    report = analyzer.analyze(records, QualityOptions(
        attributes=["value", "squareFeet"],
        value_ranges={"yearBuilt": (1800, 2030)},
        checks=[{"check": "unique", "field": "parcelId"}],
    ))
    report.metadata["insufficient_data"]
    report.metadata["checks"]["is_valid"]
"""
from __future__ import annotations

import abc
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from parcelflow.core.errors import ValidationError

logger = logging.getLogger(__name__)

# Population std below this is treated as constant data (no outliers).
MIN_STD = 0.0001


class IssueKind(str, Enum):
    MISSING_VALUES = "missing_values"
    TYPE_MISMATCH = "type_mismatch"
    OUT_OF_RANGE = "out_of_range"
    PATTERN_MISMATCH = "pattern_mismatch"
    DUPLICATE = "duplicate"
    OUTLIER = "outlier"


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class QualityOptions:
    """Per-job configuration of the quality stage."""
    attributes: Optional[List[str]] = None
    min_properties_for_stats: int = 5
    max_missing_rate: float = 0.2
    expected_types: Dict[str, str] = field(default_factory=dict)
    value_ranges: Dict[str, Tuple[Optional[float], Optional[float]]] = field(default_factory=dict)
    patterns: Dict[str, str] = field(default_factory=dict)
    unique_fields: List[str] = field(default_factory=list)
    detect_outliers: bool = True
    outlier_threshold: float = 3.0
    checks: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attributes": self.attributes,
            "min_properties_for_stats": self.min_properties_for_stats,
            "max_missing_rate": self.max_missing_rate,
            "expected_types": dict(self.expected_types),
            "value_ranges": {k: list(v) for k, v in self.value_ranges.items()},
            "patterns": dict(self.patterns),
            "unique_fields": list(self.unique_fields),
            "detect_outliers": self.detect_outliers,
            "outlier_threshold": self.outlier_threshold,
            "checks": [dict(c) for c in self.checks],
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "QualityOptions":
        """
        Build options from their JSON form.

        Raises:
            ValidationError: min_properties_for_stats below 1 or an invalid check
        """
        data = data or {}
        min_records = data.get("min_properties_for_stats", 5)
        if not isinstance(min_records, int) or isinstance(min_records, bool) or min_records < 1:
            raise ValidationError(
                "PFLW-1001", reason="min_properties_for_stats must be an integer of at least 1"
            )
        checks = [dict(c) for c in (data.get("checks") or [])]
        for check in checks:
            build_rule(check)
        return cls(
            attributes=data.get("attributes"),
            min_properties_for_stats=min_records,
            max_missing_rate=data.get("max_missing_rate", 0.2),
            expected_types=dict(data.get("expected_types") or {}),
            value_ranges={k: tuple(v) for k, v in (data.get("value_ranges") or {}).items()},
            patterns=dict(data.get("patterns") or {}),
            unique_fields=list(data.get("unique_fields") or []),
            detect_outliers=data.get("detect_outliers", True),
            outlier_threshold=data.get("outlier_threshold", 3.0),
            checks=checks,
        )


@dataclass
class QualityIssue:
    field: str
    kind: IssueKind
    severity: IssueSeverity
    message: str
    affected_records: int
    recommendation: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
            "affected_records": self.affected_records,
            "recommendation": self.recommendation,
        }


@dataclass
class FieldStatistics:
    count: int
    missing: int
    missing_rate: float
    min: Optional[float] = None
    max: Optional[float] = None
    mean: Optional[float] = None
    std: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "missing": self.missing,
            "missing_rate": round(self.missing_rate, 4),
            "min": self.min,
            "max": self.max,
            "mean": self.mean,
            "std": self.std,
        }


@dataclass
class QualityReport:
    issues: List[QualityIssue] = field(default_factory=list)
    field_statistics: Dict[str, FieldStatistics] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def insufficient_data(self) -> bool:
        return bool(self.metadata.get("insufficient_data"))

    def issues_by_severity(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in IssueSeverity}
        for issue in self.issues:
            counts[issue.severity.value] += 1
        return counts

    def summary(self) -> Dict[str, Any]:
        """Compact form attached to a job run."""
        return {
            "issue_count": len(self.issues),
            "issues_by_severity": self.issues_by_severity(),
            "issues": [i.to_dict() for i in self.issues],
            **self.metadata,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issues": [i.to_dict() for i in self.issues],
            "field_statistics": {k: v.to_dict() for k, v in self.field_statistics.items()},
            "metadata": dict(self.metadata),
        }


# =============================================================================
# Severity Classification
# =============================================================================

def missing_severity(rate: float) -> IssueSeverity:
    if rate >= 0.5:
        return IssueSeverity.HIGH
    if rate >= 0.2:
        return IssueSeverity.MEDIUM
    return IssueSeverity.LOW


def accuracy_severity(rate: float) -> IssueSeverity:
    if rate >= 0.2:
        return IssueSeverity.HIGH
    if rate >= 0.05:
        return IssueSeverity.MEDIUM
    return IssueSeverity.LOW


def consistency_severity(rate: float) -> IssueSeverity:
    if rate >= 0.1:
        return IssueSeverity.HIGH
    if rate >= 0.02:
        return IssueSeverity.MEDIUM
    return IssueSeverity.LOW


def _missing_mask(series: pd.Series) -> pd.Series:
    return series.isna() | series.map(lambda v: isinstance(v, str) and v == "")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, (bool, np.bool_))


_TYPE_CHECKS = {
    "string": lambda v: isinstance(v, str),
    "number": _is_number,
    "boolean": lambda v: isinstance(v, (bool, np.bool_)),
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, (list, tuple)),
}


def _as_float(value: Any) -> float:
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return np.nan
    return np.nan


def _numeric_values(present: pd.Series) -> Optional[pd.Series]:
    """Float view of a column whose present values are all numbers, else None."""
    if present.empty or not present.map(_is_number).all():
        return None
    return present.astype(float)


# =============================================================================
# Analyzer
# =============================================================================

class QualityAnalyzer:
    """Classifies quality issues of a record set using pandas."""

    def __init__(self, defaults: Optional[QualityOptions] = None):
        self.defaults = defaults or QualityOptions()

    def analyze(
        self,
        records: List[Dict[str, Any]],
        options: Optional[QualityOptions] = None,
    ) -> QualityReport:
        options = options or self.defaults
        df = pd.DataFrame.from_records(records) if records else pd.DataFrame()
        attributes = options.attributes or [str(c) for c in df.columns]

        metadata: Dict[str, Any] = {
            "record_count": len(df),
            "field_count": len(attributes),
            "min_properties_for_stats": options.min_properties_for_stats,
            "insufficient_data": False,
            "analyzed_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }

        if options.checks:
            metadata["checks"] = QualityEngine.from_config(options.checks).run(df)

        if len(df) == 0 or len(df) < options.min_properties_for_stats:
            metadata["insufficient_data"] = True
            metadata["message"] = (
                f"Insufficient data for statistics: {len(df)} records "
                f"(minimum: {options.min_properties_for_stats})"
            )
            logger.info(metadata["message"])
            return QualityReport(metadata=metadata)

        report = QualityReport(metadata=metadata)
        total = len(df)
        missing_cells = 0

        for name in attributes:
            if name not in df.columns:
                report.field_statistics[name] = FieldStatistics(
                    count=0, missing=total, missing_rate=1.0
                )
                missing_cells += total
                self._check_missing(report, name, total, total, options)
                continue

            series = df[name]
            missing_mask = _missing_mask(series)
            missing = int(missing_mask.sum())
            missing_cells += missing
            present = series[~missing_mask]

            stats = FieldStatistics(
                count=total - missing,
                missing=missing,
                missing_rate=missing / total,
            )
            numeric = _numeric_values(present)
            if numeric is not None:
                stats.min = float(numeric.min())
                stats.max = float(numeric.max())
                stats.mean = float(numeric.mean())
                stats.std = float(numeric.std(ddof=0))
            report.field_statistics[name] = stats

            self._check_missing(report, name, missing, total, options)
            self._check_type(report, name, present, total, options)
            self._check_range(report, name, present, total, options)
            self._check_pattern(report, name, present, total, options)
            self._check_unique(report, name, present, total, options)
            if options.detect_outliers and numeric is not None:
                self._check_outliers(report, name, numeric, stats, total, options)

        cells = total * len(attributes)
        metadata["completeness"] = round(100 - (missing_cells / cells * 100), 2) if cells else 100.0
        metadata["issues_by_severity"] = report.issues_by_severity()
        return report

    def validate(self, records: List[Dict[str, Any]], rules: List["QualityRule"]) -> Dict[str, Any]:
        """Run field checks against the records outside a job."""
        df = pd.DataFrame.from_records(records) if records else pd.DataFrame()
        return QualityEngine(rules).run(df)

    # -------------------------------------------------------------------------
    # Individual checks
    # -------------------------------------------------------------------------

    def _check_missing(self, report, name, missing, total, options):
        rate = missing / total
        if missing == 0 or rate <= options.max_missing_rate:
            return
        if rate >= 0.8:
            recommendation = f"Consider dropping {name} or finding another data source"
        elif rate >= 0.5:
            recommendation = f"Add a fill_default rule with a suitable default for {name}"
        else:
            recommendation = f"Add a validate rule requiring {name}"
        report.issues.append(QualityIssue(
            field=name,
            kind=IssueKind.MISSING_VALUES,
            severity=missing_severity(rate),
            message=f"{missing} missing values ({round(rate * 100)}%)",
            affected_records=missing,
            recommendation=recommendation,
        ))

    def _check_type(self, report, name, present, total, options):
        expected = options.expected_types.get(name)
        if not expected:
            return
        check = _TYPE_CHECKS.get(expected)
        if check is None:
            logger.warning(f"Unknown expected type '{expected}' for field {name}")
            return
        bad = int((~present.map(check)).sum())
        if bad:
            report.issues.append(QualityIssue(
                field=name,
                kind=IssueKind.TYPE_MISMATCH,
                severity=accuracy_severity(bad / total),
                message=f"{bad} values with incorrect data type (expected {expected})",
                affected_records=bad,
                recommendation=f"Add a cast rule converting {name} to {expected}",
            ))

    def _check_range(self, report, name, present, total, options):
        bounds = options.value_ranges.get(name)
        if not bounds:
            return
        low, high = bounds
        values = pd.to_numeric(present, errors="coerce").dropna()
        outside = pd.Series(False, index=values.index)
        if low is not None:
            outside |= values < low
        if high is not None:
            outside |= values > high
        bad = int(outside.sum())
        if bad:
            report.issues.append(QualityIssue(
                field=name,
                kind=IssueKind.OUT_OF_RANGE,
                severity=accuracy_severity(bad / total),
                message=f"{bad} values outside expected range [{low}, {high}]",
                affected_records=bad,
                recommendation=f"Add a filter or validate rule bounding {name}",
            ))

    def _check_pattern(self, report, name, present, total, options):
        pattern = options.patterns.get(name)
        if not pattern:
            return
        try:
            regex = re.compile(pattern)
        except re.error as e:
            logger.warning(f"Invalid pattern for field {name}: {e}")
            return
        bad = int((~present.map(lambda v: bool(regex.search(str(v))))).sum())
        if bad:
            report.issues.append(QualityIssue(
                field=name,
                kind=IssueKind.PATTERN_MISMATCH,
                severity=consistency_severity(bad / total),
                message=f"{bad} values don't match expected pattern",
                affected_records=bad,
                recommendation=f"Normalize {name} with a text rule",
            ))

    def _check_unique(self, report, name, present, total, options):
        if name not in options.unique_fields:
            return
        dupes = int(present.map(repr).duplicated().sum())
        if dupes:
            report.issues.append(QualityIssue(
                field=name,
                kind=IssueKind.DUPLICATE,
                severity=consistency_severity(dupes / total),
                message=f"{dupes} duplicate values",
                affected_records=dupes,
                recommendation=f"Deduplicate records on {name} before loading",
            ))

    def _check_outliers(self, report, name, numeric, stats, total, options):
        if stats.std is None or stats.std < MIN_STD:
            return
        z_scores = (numeric - stats.mean).abs() / stats.std
        outliers = int((z_scores > options.outlier_threshold).sum())
        if outliers:
            report.issues.append(QualityIssue(
                field=name,
                kind=IssueKind.OUTLIER,
                severity=accuracy_severity(outliers / total),
                message=(
                    f"{outliers} statistical outliers "
                    f"(|z| > {options.outlier_threshold})"
                ),
                affected_records=outliers,
                recommendation=f"Review extreme {name} values at the source",
            ))


# =============================================================================
# Field Checks
# =============================================================================

@dataclass
class CheckResult:
    check: str
    passed: bool
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"check": self.check, "passed": self.passed, "details": self.details}


class QualityRule(abc.ABC):
    """
    A pass/fail assertion about one field of a record set.

    Unlike analyzer issues, which describe data, a failed rule says the data
    broke an explicit expectation configured on the job.
    """

    kind = ""

    def __init__(self, field_name: str):
        self.field = field_name

    @property
    def name(self) -> str:
        return f"{self.kind}({self.field})"

    def check(self, df: pd.DataFrame) -> CheckResult:
        if df.empty:
            return CheckResult(self.name, True, {"reason": "no records"})
        if self.field not in df.columns:
            return CheckResult(self.name, False, {"reason": f"field {self.field} not present"})
        series = df[self.field]
        return self._check(series, series[~_missing_mask(series)])

    @abc.abstractmethod
    def _check(self, series: pd.Series, present: pd.Series) -> CheckResult:
        """Evaluate the rule against a non-empty column."""


class NullCheck(QualityRule):
    """At most max_missing_rate of the values may be missing."""

    kind = "not_null"

    def __init__(self, field_name: str, max_missing_rate: float = 0.0):
        super().__init__(field_name)
        self.max_missing_rate = max_missing_rate

    def _check(self, series, present):
        missing = len(series) - len(present)
        rate = missing / len(series)
        return CheckResult(self.name, rate <= self.max_missing_rate, {
            "missing": missing,
            "missing_rate": round(rate, 4),
            "max_missing_rate": self.max_missing_rate,
        })


class RangeCheck(QualityRule):
    """Every numeric value lies within [min_value, max_value]; non-numeric values fail."""

    kind = "range"

    def __init__(self, field_name: str, min_value: Optional[float] = None, max_value: Optional[float] = None):
        super().__init__(field_name)
        self.min_value = min_value
        self.max_value = max_value

    def _check(self, series, present):
        values = present.map(_as_float).astype(float)
        outside = values.isna()
        if self.min_value is not None:
            outside |= values < self.min_value
        if self.max_value is not None:
            outside |= values > self.max_value
        failures = int(outside.sum())
        return CheckResult(self.name, failures == 0, {
            "failures": failures,
            "min": self.min_value,
            "max": self.max_value,
        })


class UniqueCheck(QualityRule):
    """No present value occurs twice."""

    kind = "unique"

    def _check(self, series, present):
        duplicates = int(present.map(repr).duplicated().sum())
        return CheckResult(self.name, duplicates == 0, {"duplicates": duplicates})


RULE_TYPES = {rule.kind: rule for rule in (NullCheck, RangeCheck, UniqueCheck)}


def build_rule(config: Dict[str, Any]) -> QualityRule:
    """
    Build a rule from its JSON form, e.g. ``{"check": "range", "field": "value", "min_value": 0}``.

    Raises:
        ValidationError: unknown check or missing field
    """
    config = dict(config)
    kind = config.pop("check", None)
    field_name = config.pop("field", None)
    rule_type = RULE_TYPES.get(kind)
    if rule_type is None:
        raise ValidationError(
            "PFLW-1001",
            reason=f"unknown quality check '{kind}' (expected one of {', '.join(sorted(RULE_TYPES))})",
        )
    if not field_name:
        raise ValidationError("PFLW-1001", reason=f"quality check '{kind}' needs a field")
    try:
        return rule_type(field_name, **config)
    except TypeError as e:
        raise ValidationError("PFLW-1001", reason=f"invalid options for '{kind}': {e}") from e


class QualityEngine:
    """Runs a suite of rules and summarizes the outcome."""

    def __init__(self, rules: List[QualityRule]):
        self.rules = rules

    @classmethod
    def from_config(cls, configs: List[Dict[str, Any]]) -> "QualityEngine":
        return cls([build_rule(c) for c in configs])

    def run(self, df: pd.DataFrame) -> Dict[str, Any]:
        results = [rule.check(df) for rule in self.rules]
        failed = [r for r in results if not r.passed]
        if failed:
            logger.info(f"{len(failed)} of {len(results)} quality checks failed")
        return {
            "total": len(results),
            "passed": len(results) - len(failed),
            "failed": len(failed),
            "is_valid": not failed,
            "results": [r.to_dict() for r in results],
        }
