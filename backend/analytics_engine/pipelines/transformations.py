"""
Transformation engine applying ordered filter/map/aggregate/validate/enrich steps.

Records are plain dicts. A step never mutates its input records; ``map`` and
``enrich`` write into copies. Per-record failures are counted and the record
is dropped, while a malformed step list fails before any record is touched.
"""
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic import TypeAdapter, ValidationError

from analytics_engine.core.exceptions import (
    AnalyticsEngineError,
    ConfigurationError,
    ExtractError,
    RecordError,
)
from analytics_engine.core.logging import get_logger
from analytics_engine.models.schemas.pipeline import (
    AggregateStep,
    EnrichJoin,
    EnrichStep,
    FilterCondition,
    FilterStep,
    MapStep,
    TransformationStep,
    ValidateStep,
    ValidationRule,
)
from analytics_engine.pipelines.expressions import compile_expression

logger = get_logger(__name__)

Record = Dict[str, Any]

_STEP_LIST_ADAPTER = TypeAdapter(List[TransformationStep])


class LookupSource(ABC):
    """Auxiliary datasets used by enrich steps."""

    @abstractmethod
    async def lookup(
        self,
        tenant_id: Optional[str],
        table: str,
        key_column: str,
        keys: Sequence[Any],
        fields: Sequence[str],
    ) -> Dict[Any, Record]:
        """Return ``{key: row}`` for every key found in ``table``."""


@dataclass
class TransformResult:
    """Output batch of a transformation chain."""
    records: List[Record]
    records_failed: int = 0
    errors: List[str] = field(default_factory=list)


class _FailureLog:
    """Counts dropped records and keeps the first few messages."""

    def __init__(self, max_errors: int):
        self.max_errors = max_errors
        self.count = 0
        self.messages: List[str] = []

    def add(self, step_id: str, index: int, error: Exception) -> None:
        self.count += 1
        if len(self.messages) < self.max_errors:
            message = error.message if isinstance(error, AnalyticsEngineError) else str(error)
            self.messages.append(f"[{step_id}] record {index}: {message}")


def parse_steps(steps: Iterable[Any]) -> List[TransformationStep]:
    """
    Validate a step list (models or plain dicts) and return it in execution order.

    Raises:
        ConfigurationError: on any malformed step or duplicate order value.
    """
    try:
        parsed = _STEP_LIST_ADAPTER.validate_python(
            [step.model_dump() if hasattr(step, "model_dump") else step for step in steps]
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid transformation step configuration: {e}", cause=e) from e

    orders = [step.order for step in parsed]
    if len(orders) != len(set(orders)):
        raise ConfigurationError("Transformation step order values must be unique")

    return sorted(parsed, key=lambda step: (step.order, step.id))


class TransformationEngine:
    """Applies an ordered chain of transformation steps to a record batch."""

    def __init__(self, lookup_source: Optional[LookupSource] = None, max_errors: int = 100):
        self.lookup_source = lookup_source
        self.max_errors = max_errors

    async def apply(
        self,
        records: Sequence[Record],
        steps: Iterable[Any],
        tenant_id: Optional[str] = None,
    ) -> TransformResult:
        """
        Apply ``steps`` in ``(order, id)`` order.

        Args:
            records: Input batch
            steps: Step models or dicts
            tenant_id: Tenant scope for enrich lookups

        Returns:
            TransformResult with surviving records and failure counts
        """
        ordered = parse_steps(steps)
        compiled = self._prepare(ordered)
        failures = _FailureLog(self.max_errors)

        batch: List[Record] = list(records)
        for step in ordered:
            before = len(batch)
            if isinstance(step, FilterStep):
                batch = self._apply_filter(batch, step, failures)
            elif isinstance(step, MapStep):
                batch = self._apply_map(batch, step, compiled[step.id], failures)
            elif isinstance(step, AggregateStep):
                batch = self._apply_aggregate(batch, step, failures)
            elif isinstance(step, ValidateStep):
                batch = self._apply_validate(batch, step, failures)
            elif isinstance(step, EnrichStep):
                batch = await self._apply_enrich(batch, step, tenant_id)
            logger.debug(f"Step {step.id} ({step.type}): {before} -> {len(batch)} records")

        return TransformResult(records=batch, records_failed=failures.count, errors=failures.messages)

    def _prepare(self, steps: List[TransformationStep]) -> Dict[str, List[tuple]]:
        """Compile map expressions and check enrich prerequisites up front."""
        compiled: Dict[str, List[tuple]] = {}
        for step in steps:
            if isinstance(step, MapStep):
                compiled[step.id] = [
                    (calc.field, compile_expression(calc.expression)) for calc in step.calculations
                ]
            elif isinstance(step, EnrichStep) and self.lookup_source is None:
                raise ConfigurationError(f"Enrich step '{step.id}' requires a lookup source")
        return compiled

    # filter

    def _apply_filter(self, records: List[Record], step: FilterStep, failures: _FailureLog) -> List[Record]:
        combine = all if step.match == "all" else any
        kept = []
        for index, record in enumerate(records):
            try:
                if combine(_condition_holds(condition, record) for condition in step.conditions):
                    kept.append(record)
            except RecordError as e:
                failures.add(step.id, index, e)
        return kept

    # map

    def _apply_map(
        self,
        records: List[Record],
        step: MapStep,
        calculations: List[tuple],
        failures: _FailureLog,
    ) -> List[Record]:
        mapped = []
        for index, record in enumerate(records):
            result = dict(record)
            try:
                # Later calculations may reference fields produced by earlier ones
                for field_name, expression in calculations:
                    result[field_name] = expression.evaluate(result)
            except RecordError as e:
                failures.add(step.id, index, e)
                continue
            mapped.append(result)
        return mapped

    # aggregate

    def _apply_aggregate(self, records: List[Record], step: AggregateStep, failures: _FailureLog) -> List[Record]:
        groups: Dict[tuple, Dict[str, Any]] = {}

        for index, record in enumerate(records):
            key = tuple(_group_value(record.get(name)) for name in step.group_by)
            group = groups.get(key)
            states = group["measures"] if group else [_MeasureState(m.operation) for m in step.measures]
            try:
                updates = [state.prepare(record.get(m.field)) for state, m in zip(states, step.measures)]
            except RecordError as e:
                failures.add(step.id, index, e)
                continue

            if group is None:
                # Missing group-by fields are emitted as empty strings
                keys = {}
                for name in step.group_by:
                    value = record.get(name)
                    keys[name] = "" if value is None else value
                group = {"keys": keys, "measures": states}
                groups[key] = group
            for state, update in zip(states, updates):
                state.commit(update)

        output = []
        for group in groups.values():
            row = dict(group["keys"])
            for measure, state in zip(step.measures, group["measures"]):
                row[measure.output_field] = state.result()
            output.append(row)
        return output

    # validate

    def _apply_validate(self, records: List[Record], step: ValidateStep, failures: _FailureLog) -> List[Record]:
        valid = []
        for index, record in enumerate(records):
            try:
                for rule in step.rules:
                    _check_rule(rule, record)
            except RecordError as e:
                failures.add(step.id, index, e)
                continue
            valid.append(record)
        return valid

    # enrich

    async def _apply_enrich(self, records: List[Record], step: EnrichStep, tenant_id: Optional[str]) -> List[Record]:
        enriched = [dict(record) for record in records]
        for join in step.joins:
            # Deduplicated by string form; the lookup receives raw values so they bind with the column type
            keys: Dict[str, Any] = {}
            for record in enriched:
                value = record.get(join.on)
                if value is not None:
                    keys.setdefault(_lookup_key(value), value)
            if not keys:
                continue
            rows = await self._lookup(tenant_id, join, list(keys.values()))
            matched = {_lookup_key(k): row for k, row in rows.items()}
            for record in enriched:
                value = record.get(join.on)
                if value is None:
                    continue
                row = matched.get(_lookup_key(value))
                if row is None:
                    continue
                for field_name in join.fields:
                    if field_name in row:
                        record[field_name] = row[field_name]
        return enriched

    async def _lookup(self, tenant_id: Optional[str], join: EnrichJoin, keys: List[Any]) -> Dict[Any, Record]:
        try:
            return await self.lookup_source.lookup(tenant_id, join.table, join.key_column, keys, join.fields)
        except AnalyticsEngineError:
            raise
        except Exception as e:
            raise ExtractError(f"Enrichment lookup against {join.table} failed: {e}", cause=e) from e


class _MeasureState:
    """Running state of one measure in one group."""

    def __init__(self, operation: str):
        self.operation = operation
        self.total: Any = 0
        self.count = 0
        self.value: Any = None

    def prepare(self, value: Any):
        """Compute the state this value would produce, raising RecordError if it cannot be used."""
        if value is None:
            return None
        op = self.operation
        try:
            if op in ("sum", "avg"):
                if not _is_number(value):
                    raise RecordError(f"Non-numeric value {value!r} for {op}")
                return self.total + value
            if op == "min":
                return value if self.value is None or value < self.value else self.value
            if op == "max":
                return value if self.value is None or value > self.value else self.value
        except (TypeError, ArithmeticError) as e:
            raise RecordError(f"Cannot {op} {value!r}: {e}", cause=e) from e
        return value  # count, last

    def commit(self, update: Any) -> None:
        if update is None:
            return
        self.count += 1
        if self.operation in ("sum", "avg"):
            self.total = update
        else:
            self.value = update

    def result(self) -> Any:
        op = self.operation
        if op == "sum":
            return self.total
        if op == "count":
            return self.count
        if op == "avg":
            return self.total / self.count if self.count else None
        return self.value


def _group_value(value: Any) -> str:
    return "" if value is None else str(value)


def _lookup_key(value: Any) -> str:
    return str(value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _condition_holds(condition: FilterCondition, record: Record) -> bool:
    value = record.get(condition.field)
    op = condition.op
    if op == "is_null":
        return value is None
    if op == "not_null":
        return value is not None
    if op == "eq":
        return value == condition.value
    if op == "ne":
        return value != condition.value
    if op == "in":
        return value in condition.value
    if op == "not_in":
        return value not in condition.value
    if value is None:
        return False
    try:
        if op == "gt":
            return value > condition.value
        if op == "gte":
            return value >= condition.value
        if op == "lt":
            return value < condition.value
        if op == "lte":
            return value <= condition.value
    except (TypeError, ArithmeticError) as e:
        raise RecordError(
            f"Cannot compare field '{condition.field}' value {value!r} with {condition.value!r}", cause=e
        ) from e
    raise ConfigurationError(f"Unknown filter operator: {op}")


def _check_rule(rule: ValidationRule, record: Record) -> None:
    value = record.get(rule.field)
    if value is None or value == "":
        if rule.required:
            raise RecordError(f"Field '{rule.field}' is required")
        return

    if rule.type and not _matches_type(rule.type, value):
        raise RecordError(f"Field '{rule.field}' value {value!r} is not of type {rule.type}")

    if rule.min is not None or rule.max is not None:
        if not _is_number(value):
            raise RecordError(f"Field '{rule.field}' value {value!r} is not numeric")
        try:
            below = rule.min is not None and value < rule.min
            above = rule.max is not None and value > rule.max
        except (TypeError, ArithmeticError) as e:
            raise RecordError(f"Field '{rule.field}' value {value!r} cannot be range checked", cause=e) from e
        if below:
            raise RecordError(f"Field '{rule.field}' value {value} is below minimum {rule.min}")
        if above:
            raise RecordError(f"Field '{rule.field}' value {value} is above maximum {rule.max}")


def _matches_type(expected: str, value: Any) -> bool:
    if expected == "number":
        return _is_number(value)
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == "string":
        return isinstance(value, str)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "uuid":
        if isinstance(value, uuid.UUID):
            return True
        try:
            uuid.UUID(str(value))
            return True
        except ValueError:
            return False
    if expected == "date":
        if isinstance(value, (date, datetime)):
            return True
        if isinstance(value, str):
            try:
                datetime.fromisoformat(value)
                return True
            except ValueError:
                return False
        return False
    return True
