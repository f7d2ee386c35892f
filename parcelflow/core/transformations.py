"""
Transformation Rule Engine

Applies a job's ordered transformation rules to extracted records.

Rules reference transform functions by name; functions are registered
Python callables, never evaluated source text. A function receives one
record plus the rule's config and returns the transformed record, or None
to filter the record out.

Features:
- Named transform registry with decorator registration
- Built-in transforms: filter, rename, select, cast, fill_default, text,
  ratio, validate
- Ordered execution (later rules see earlier rules' output)
- Per-record failure isolation: a raising rule drops only that record
- Inactive rules skipped with a warning note

Usage:
    from parcelflow.core.transformations import TransformationEngine

    engine = TransformationEngine()
    rule = engine.add_rule("price per sqft", "ratio", {
        "numerator": "value", "denominator": "squareFeet", "target": "pricePerSqFt",
    })
    result = engine.apply(records, [rule.id])

    @engine.registry.register("geocode", description="Attach lat/lng")
    def geocode(record, config):
        ...
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from parcelflow.core.errors import RecordValidationError, ResourceNotFoundError, ValidationError
from parcelflow.core.models import DataType, TransformationRule, TransformError, new_id
from parcelflow.core.store import InMemoryStore

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
TransformFn = Callable[[Record, Dict[str, Any]], Optional[Record]]


@dataclass
class TransformSpec:
    """Metadata for a registered transform function."""
    name: str
    fn: TransformFn
    description: str = ""
    builtin: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "builtin": self.builtin}


# =============================================================================
# Registry
# =============================================================================

_BUILTINS: Dict[str, TransformSpec] = {}


def builtin_transform(name: str, description: str = ""):
    def wrapper(fn: TransformFn) -> TransformFn:
        _BUILTINS[name] = TransformSpec(name=name, fn=fn, description=description, builtin=True)
        return fn
    return wrapper


class TransformRegistry:
    """Maps transform names to callables."""

    def __init__(self, include_builtins: bool = True):
        self._functions: Dict[str, TransformSpec] = dict(_BUILTINS) if include_builtins else {}

    def register(self, name: str, description: str = ""):
        """
        Decorator registering a transform function.

        Usage:
            @registry.register("normalize_apn")
            def normalize_apn(record, config): ...
        """
        def wrapper(fn: TransformFn) -> TransformFn:
            self.register_function(name, fn, description)
            return fn
        return wrapper

    def register_function(self, name: str, fn: TransformFn, description: str = ""):
        if not callable(fn):
            raise TypeError(f"Transform {name} must be callable")
        if name in self._functions:
            logger.warning(f"Overwriting existing transform registration: {name}")
        self._functions[name] = TransformSpec(name=name, fn=fn, description=description)
        logger.debug(f"Registered transform: {name}")

    def get(self, name: str) -> TransformFn:
        spec = self._functions.get(name)
        if spec is None:
            raise ResourceNotFoundError("PFLW-2007", name=name)
        return spec.fn

    def list(self) -> List[TransformSpec]:
        return sorted(self._functions.values(), key=lambda s: s.name)

    def __contains__(self, name: str) -> bool:
        return name in self._functions


# =============================================================================
# Built-in Transforms
# =============================================================================

def _is_missing(value: Any) -> bool:
    if value is None or value == "":
        return True
    return isinstance(value, float) and math.isnan(value)


def _compare(actual: Any, expected: Any, op: Callable[[Any, Any], bool]) -> bool:
    if _is_missing(actual):
        return False
    try:
        return op(float(actual), float(expected))
    except (TypeError, ValueError):
        return op(str(actual), str(expected))


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda a, e: a == e,
    "neq": lambda a, e: a != e,
    "gt": lambda a, e: _compare(a, e, lambda x, y: x > y),
    "gte": lambda a, e: _compare(a, e, lambda x, y: x >= y),
    "lt": lambda a, e: _compare(a, e, lambda x, y: x < y),
    "lte": lambda a, e: _compare(a, e, lambda x, y: x <= y),
    "in": lambda a, e: a in (e or []),
    "not_in": lambda a, e: a not in (e or []),
    "contains": lambda a, e: not _is_missing(a) and str(e).lower() in str(a).lower(),
    "not_contains": lambda a, e: _is_missing(a) or str(e).lower() not in str(a).lower(),
    "starts_with": lambda a, e: not _is_missing(a) and str(a).lower().startswith(str(e).lower()),
    "ends_with": lambda a, e: not _is_missing(a) and str(a).lower().endswith(str(e).lower()),
    "is_null": lambda a, e: _is_missing(a),
    "is_not_null": lambda a, e: not _is_missing(a),
    "between": lambda a, e: _compare(a, e[0], lambda x, y: x >= y) and _compare(a, e[1], lambda x, y: x <= y),
    "not_between": lambda a, e: not (
        _compare(a, e[0], lambda x, y: x >= y) and _compare(a, e[1], lambda x, y: x <= y)
    ),
    "regex": lambda a, e: not _is_missing(a) and re.search(e, str(a)) is not None,
}

FILTER_OPERATORS = tuple(_OPERATORS)


@builtin_transform("filter", "Keep records matching all (and) or any (or) conditions")
def filter_record(record: Record, config: Dict[str, Any]) -> Optional[Record]:
    conditions = config.get("conditions", [])
    logic = str(config.get("logic", "and")).lower()
    results = []
    for condition in conditions:
        op = _OPERATORS.get(condition.get("operator", "eq"))
        if op is None:
            raise ValueError(f"Unknown filter operator: {condition.get('operator')}")
        results.append(op(record.get(condition["field"]), condition.get("value")))

    if not results:
        return record
    matched = any(results) if logic == "or" else all(results)
    return record if matched else None


@builtin_transform("rename", "Rename fields: {'mapping': {old: new}}")
def rename_fields(record: Record, config: Dict[str, Any]) -> Record:
    mapping = config.get("mapping", {})
    return {mapping.get(key, key): value for key, value in record.items()}


@builtin_transform("select", "Keep only the listed fields")
def select_fields(record: Record, config: Dict[str, Any]) -> Record:
    return {key: record.get(key) for key in config.get("fields", [])}


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "y", "1"):
            return True
        if lowered in ("false", "no", "n", "0", ""):
            return False
        raise ValueError(f"Cannot interpret '{value}' as boolean")
    return bool(value)


def _cast(value: Any, target: str) -> Any:
    if target == "string":
        return str(value)
    if target == "number":
        if isinstance(value, str):
            value = value.replace(",", "").replace("$", "").strip()
        return float(value)
    if target == "integer":
        return int(float(value))
    if target == "boolean":
        return _to_bool(value)
    if target == "date":
        parsed = pd.to_datetime(value, errors="coerce", utc=True)
        return None if pd.isna(parsed) else parsed.isoformat().replace("+00:00", "Z")
    raise ValueError(f"Unsupported cast type: {target}")


@builtin_transform("cast", "Convert field types: {'fields': {name: string|number|integer|boolean|date}}")
def cast_fields(record: Record, config: Dict[str, Any]) -> Record:
    result = dict(record)
    defaults = config.get("defaults", {})
    for name, target in config.get("fields", {}).items():
        value = result.get(name)
        if _is_missing(value):
            continue
        try:
            result[name] = _cast(value, target)
        except (TypeError, ValueError):
            if name not in defaults:
                raise ValueError(f"Cannot cast {name}={value!r} to {target}")
            result[name] = defaults[name]
    return result


@builtin_transform("fill_default", "Fill missing values: {'defaults': {field: value}}")
def fill_defaults(record: Record, config: Dict[str, Any]) -> Record:
    result = dict(record)
    for name, default in config.get("defaults", {}).items():
        if _is_missing(result.get(name)):
            result[name] = default
    return result


@builtin_transform("text", "String operations: upper, lower, trim, title, replace")
def text_fields(record: Record, config: Dict[str, Any]) -> Record:
    result = dict(record)
    operation = config.get("operation", "trim")
    for name in config.get("fields", []):
        value = result.get(name)
        if not isinstance(value, str):
            continue
        if operation == "upper":
            result[name] = value.upper()
        elif operation == "lower":
            result[name] = value.lower()
        elif operation == "trim":
            result[name] = value.strip()
        elif operation == "title":
            result[name] = value.title()
        elif operation == "replace":
            result[name] = re.sub(config["pattern"], config.get("replacement", ""), value)
        else:
            raise ValueError(f"Unknown text operation: {operation}")
    return result


@builtin_transform("ratio", "Derived field: target = numerator / denominator")
def ratio_field(record: Record, config: Dict[str, Any]) -> Record:
    result = dict(record)
    numerator = result.get(config["numerator"])
    denominator = result.get(config["denominator"])
    target = config.get("target", f"{config['numerator']}_per_{config['denominator']}")

    if _is_missing(numerator) or _is_missing(denominator) or float(denominator) == 0:
        result[target] = None
    else:
        result[target] = round(float(numerator) / float(denominator), config.get("precision", 2))
    return result


@builtin_transform("validate", "Reject records missing required fields or out of range")
def validate_record(record: Record, config: Dict[str, Any]) -> Record:
    missing = [name for name in config.get("required", []) if _is_missing(record.get(name))]
    if missing:
        raise RecordValidationError(f"missing required fields: {', '.join(missing)}")

    for name, bounds in config.get("ranges", {}).items():
        value = record.get(name)
        if _is_missing(value):
            continue
        low, high = bounds
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise RecordValidationError(f"{name} is not numeric: {value!r}")
        if low is not None and number < low:
            raise RecordValidationError(f"{name}={number} below minimum {low}")
        if high is not None and number > high:
            raise RecordValidationError(f"{name}={number} above maximum {high}")
    return record


# =============================================================================
# Engine
# =============================================================================

@dataclass
class TransformResult:
    records: List[Record] = field(default_factory=list)
    errors: List[TransformError] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    filtered: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "records": len(self.records),
            "errors": [e.to_dict() for e in self.errors],
            "notes": list(self.notes),
            "filtered": self.filtered,
        }


class TransformationEngine:
    """Owns the transformation rules and executes them against records."""

    def __init__(self, registry: Optional[TransformRegistry] = None):
        self.registry = registry or TransformRegistry()
        self._rules: InMemoryStore[TransformationRule] = InMemoryStore("rules")

    # -------------------------------------------------------------------------
    # Rule CRUD
    # -------------------------------------------------------------------------

    def add_rule(
        self,
        name: str,
        transform: str,
        config: Optional[Dict[str, Any]] = None,
        data_type: DataType = DataType.OBJECT,
        description: str = "",
        active: bool = True,
    ) -> TransformationRule:
        self.registry.get(transform)
        rule = TransformationRule(
            id=new_id("rule"),
            name=name,
            transform=transform,
            config=config or {},
            data_type=DataType(data_type),
            description=description,
            active=active,
        )
        self._rules.create(rule)
        logger.info(f"Added transformation rule {rule.id} ({name} -> {transform})")
        return rule

    def get_rule(self, rule_id: str) -> Optional[TransformationRule]:
        return self._rules.get(rule_id)

    def list_rules(self) -> List[TransformationRule]:
        return self._rules.list()

    def update_rule(self, rule_id: str, **changes) -> Optional[TransformationRule]:
        if "id" in changes:
            raise ValidationError("PFLW-1001", reason="rule id cannot be changed")
        if "transform" in changes:
            self.registry.get(changes["transform"])
        if "data_type" in changes:
            changes["data_type"] = DataType(changes["data_type"])
        return self._rules.update(rule_id, **changes)

    def delete_rule(self, rule_id: str) -> bool:
        """Delete a rule. Jobs still referencing it fail at run time."""
        deleted = self._rules.delete(rule_id)
        if deleted:
            logger.info(f"Deleted transformation rule {rule_id}")
        return deleted

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def apply(self, records: List[Record], rule_ids: List[str]) -> TransformResult:
        """
        Run the rules, in order, over every record.

        Raises:
            ResourceNotFoundError: a rule id or transform name does not resolve
        """
        result = TransformResult()
        chain = []

        for rule_id in rule_ids:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise ResourceNotFoundError("PFLW-2003", rule_id=rule_id)
            if not rule.active:
                note = f"Skipped inactive rule {rule.name} ({rule.id})"
                logger.warning(note)
                result.notes.append(note)
                continue
            chain.append((rule, self.registry.get(rule.transform)))

        for index, record in enumerate(records):
            current: Optional[Record] = dict(record)
            for rule, fn in chain:
                try:
                    current = fn(current, rule.config)
                    if current is not None and not isinstance(current, dict):
                        raise TypeError(
                            f"transform returned {type(current).__name__}, expected dict"
                        )
                except Exception as e:
                    message = getattr(e, "message", None) or str(e) or type(e).__name__
                    result.errors.append(TransformError(
                        rule_id=rule.id,
                        rule_name=rule.name,
                        record_index=index,
                        message=message,
                    ))
                    logger.debug(f"Rule {rule.name} dropped record {index}: {message}")
                    break
                if current is None:
                    result.filtered += 1
                    break
            else:
                result.records.append(current)

        if result.errors:
            logger.warning(
                f"{len(result.errors)} of {len(records)} records failed transformation"
            )
        return result
