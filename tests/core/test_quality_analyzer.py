"""
Tests for the data quality analyzer and pass/fail field checks.
"""
import pytest

from parcelflow.core.errors import ValidationError
from parcelflow.core.quality import (
    IssueKind,
    IssueSeverity,
    NullCheck,
    QualityAnalyzer,
    QualityOptions,
    RangeCheck,
    UniqueCheck,
    build_rule,
)


@pytest.fixture
def analyzer():
    return QualityAnalyzer()


def _issues(report, kind):
    return [i for i in report.issues if i.kind == kind]


class TestInsufficientData:

    def test_below_minimum_reports_no_issues(self, analyzer):
        report = analyzer.analyze([{"value": 1}, {"value": None}])
        assert report.insufficient_data
        assert report.issues == []
        assert "Insufficient data" in report.metadata["message"]
        assert report.metadata["record_count"] == 2

    def test_empty_input(self, analyzer):
        report = analyzer.analyze([])
        assert report.insufficient_data
        assert report.summary()["issue_count"] == 0


class TestIssueDetection:

    def test_missing_values_above_threshold(self, analyzer, parcels):
        for p in parcels[:3]:
            p["address"] = None
        report = analyzer.analyze(parcels)

        missing = _issues(report, IssueKind.MISSING_VALUES)
        assert len(missing) == 1
        assert missing[0].field == "address"
        assert missing[0].affected_records == 3
        assert missing[0].severity == IssueSeverity.HIGH

    def test_missing_values_within_threshold_ignored(self, analyzer, parcels):
        parcels[0]["address"] = ""
        report = analyzer.analyze(parcels)
        assert _issues(report, IssueKind.MISSING_VALUES) == []
        assert report.field_statistics["address"].missing == 1

    def test_outlier_detection(self, analyzer):
        records = [{"value": 300000 + i * 1000} for i in range(19)]
        records.append({"value": 9000000})
        report = analyzer.analyze(records)

        outliers = _issues(report, IssueKind.OUTLIER)
        assert len(outliers) == 1
        assert outliers[0].affected_records == 1
        assert outliers[0].severity == IssueSeverity.MEDIUM

    def test_constant_field_has_no_outliers(self, analyzer):
        report = analyzer.analyze([{"value": 5} for _ in range(10)])
        assert _issues(report, IssueKind.OUTLIER) == []

    def test_type_range_pattern_and_duplicates(self, analyzer, parcels):
        parcels[0]["value"] = "unknown"
        parcels[1]["squareFeet"] = -10
        parcels[2]["parcelId"] = "bad id"
        parcels[4]["parcelId"] = "APN-004"
        options = QualityOptions(
            expected_types={"value": "number"},
            value_ranges={"squareFeet": (0, None)},
            patterns={"parcelId": r"^APN-\d{3}$"},
            unique_fields=["parcelId"],
        )
        report = analyzer.analyze(parcels, options)

        kinds = {i.kind for i in report.issues}
        assert IssueKind.TYPE_MISMATCH in kinds
        assert IssueKind.OUT_OF_RANGE in kinds
        assert IssueKind.PATTERN_MISMATCH in kinds
        assert IssueKind.DUPLICATE in kinds

    def test_attribute_subset_and_absent_field(self, analyzer, parcels):
        options = QualityOptions(attributes=["value", "landUse"])
        report = analyzer.analyze(parcels, options)
        assert set(report.field_statistics) == {"value", "landUse"}
        assert report.field_statistics["landUse"].missing_rate == 1.0
        assert _issues(report, IssueKind.MISSING_VALUES)[0].field == "landUse"

    def test_summary_shape(self, analyzer, parcels):
        summary = analyzer.analyze(parcels).summary()
        assert summary["issue_count"] == 0
        assert summary["completeness"] == 100.0
        assert summary["issues_by_severity"] == {"low": 0, "medium": 0, "high": 0}
        assert summary["insufficient_data"] is False


class TestQualityOptions:

    def test_round_trip_through_dict(self):
        options = QualityOptions(value_ranges={"value": (0, 1000000)}, unique_fields=["parcelId"])
        restored = QualityOptions.from_dict(options.to_dict())
        assert restored.value_ranges == {"value": (0, 1000000)}
        assert restored.unique_fields == ["parcelId"]

    def test_checks_round_trip_through_dict(self):
        options = QualityOptions(checks=[{"check": "unique", "field": "parcelId"}])
        assert QualityOptions.from_dict(options.to_dict()).checks == options.checks

    @pytest.mark.parametrize("minimum", [0, -1, "5", True])
    def test_minimum_record_count_must_be_positive(self, minimum):
        with pytest.raises(ValidationError):
            QualityOptions.from_dict({"min_properties_for_stats": minimum})

    def test_invalid_check_rejected(self):
        with pytest.raises(ValidationError):
            QualityOptions.from_dict({"checks": [{"check": "regex", "field": "parcelId"}]})


class TestZeroMinimum:

    def test_empty_input_with_zero_minimum(self, analyzer):
        report = analyzer.analyze([], QualityOptions(attributes=["value"], min_properties_for_stats=0))
        assert report.insufficient_data
        assert report.issues == []
        assert report.field_statistics == {}

    def test_single_record_with_zero_minimum_is_analyzed(self, analyzer):
        report = analyzer.analyze([{"value": 10}], QualityOptions(min_properties_for_stats=0))
        assert not report.insufficient_data
        assert report.field_statistics["value"].count == 1


class TestFieldChecks:

    def test_check_suite(self, analyzer, parcels):
        parcels[0]["value"] = None
        result = analyzer.validate(parcels, [
            NullCheck("value"),
            RangeCheck("squareFeet", min_value=500, max_value=5000),
            UniqueCheck("parcelId"),
        ])
        assert result["total"] == 3
        assert result["failed"] == 1
        assert result["is_valid"] is False
        assert result["results"][0]["check"] == "not_null(value)"
        assert result["results"][0]["details"]["missing"] == 1

    def test_missing_rate_tolerance(self, analyzer, parcels):
        parcels[0]["value"] = None
        result = analyzer.validate(parcels, [NullCheck("value", max_missing_rate=0.2)])
        assert result["is_valid"] is True

    def test_range_counts_non_numeric_values(self, analyzer, parcels):
        parcels[0]["squareFeet"] = "n/a"
        parcels[1]["squareFeet"] = "1700"
        parcels[2]["squareFeet"] = 100
        result = analyzer.validate(parcels, [RangeCheck("squareFeet", min_value=500)])
        assert result["results"][0]["details"]["failures"] == 2

    def test_unique_handles_unhashable_values(self, analyzer):
        records = [
            {"owner": {"name": "Ada", "ids": [1]}},
            {"owner": {"name": "Ada", "ids": [1]}},
            {"owner": {"name": "Bo", "ids": [2]}},
        ]
        result = analyzer.validate(records, [UniqueCheck("owner")])
        assert result["is_valid"] is False
        assert result["results"][0]["details"]["duplicates"] == 1

    def test_missing_field_fails(self, analyzer, parcels):
        result = analyzer.validate(parcels, [UniqueCheck("landUse")])
        assert result["results"][0]["passed"] is False
        assert "landUse" in result["results"][0]["details"]["reason"]

    def test_no_records_pass(self, analyzer):
        result = analyzer.validate([], [NullCheck("value")])
        assert result["is_valid"] is True

    def test_build_rule(self):
        rule = build_rule({"check": "range", "field": "value", "max_value": 1000000})
        assert isinstance(rule, RangeCheck)
        assert rule.max_value == 1000000

    @pytest.mark.parametrize("config", [
        {"check": "regex", "field": "value"},
        {"check": "range"},
        {"check": "range", "field": "value", "lower": 0},
    ])
    def test_build_rule_rejects_bad_config(self, config):
        with pytest.raises(ValidationError):
            build_rule(config)

    def test_configured_checks_reported_with_analysis(self, analyzer, parcels):
        parcels[4]["parcelId"] = "APN-004"
        options = QualityOptions(checks=[{"check": "unique", "field": "parcelId"}])
        summary = analyzer.analyze(parcels, options).summary()
        assert summary["checks"]["is_valid"] is False
        assert summary["checks"]["results"][0]["check"] == "unique(parcelId)"

    def test_checks_run_even_when_data_is_insufficient(self, analyzer, parcels):
        options = QualityOptions(checks=[{"check": "not_null", "field": "value"}])
        report = analyzer.analyze(parcels[:2], options)
        assert report.insufficient_data
        assert report.metadata["checks"]["is_valid"] is True
