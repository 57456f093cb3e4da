"""
Parameterized SELECT builder.

Identifiers come from validated ``QuerySpec`` fields and are quoted;
filter values never appear in the SQL text, only as ``:p<n>`` bind
parameters for the query executor.
"""
from typing import Any, Dict, Tuple

from analytics_engine.core.exceptions import ConfigurationError
from analytics_engine.models.schemas.pipeline import FilterCondition
from analytics_engine.models.schemas.warehouse import QuerySpec
from analytics_engine.warehouse.partitions import quote_ident

_COMPARISONS = {
    "eq": "=",
    "ne": "<>",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
}


def build_select(spec: QuerySpec) -> Tuple[str, Dict[str, Any]]:
    """
    Build SQL text and bind parameters for ``spec``.

    The table is referenced unqualified; the executor resolves it through
    the tenant's ``search_path``.

    Returns:
        ``(sql, params)`` ready for ``QueryExecutor.execute``
    """
    select_list = [quote_ident(column) for column in spec.columns]
    for aggregate in spec.aggregates:
        target = "*" if aggregate.column == "*" else quote_ident(aggregate.column)
        if target == "*" and aggregate.function != "count":
            raise ConfigurationError(f"'*' is only valid with count, not {aggregate.function}")
        select_list.append(f"{aggregate.function.upper()}({target}) AS {quote_ident(aggregate.alias)}")
    if not select_list:
        raise ConfigurationError("Query must select at least one column or aggregate")

    if spec.aggregates:
        ungrouped = set(spec.columns) - set(spec.group_by)
        if ungrouped:
            raise ConfigurationError(f"Columns {sorted(ungrouped)} must appear in group_by")

    params: Dict[str, Any] = {}
    sql = f"SELECT {', '.join(select_list)} FROM {quote_ident(spec.table)}"

    if spec.filters:
        clauses = [_filter_clause(condition, params) for condition in spec.filters]
        sql += " WHERE " + " AND ".join(clauses)
    if spec.group_by:
        sql += " GROUP BY " + ", ".join(quote_ident(column) for column in spec.group_by)
    if spec.order_by:
        terms = [
            f"{quote_ident(order.column)} {'DESC' if order.descending else 'ASC'}"
            for order in spec.order_by
        ]
        sql += " ORDER BY " + ", ".join(terms)
    if spec.limit is not None:
        params["limit"] = spec.limit
        sql += " LIMIT :limit"

    return sql, params


def _filter_clause(condition: FilterCondition, params: Dict[str, Any]) -> str:
    column = quote_ident(condition.field)
    if condition.op == "is_null":
        return f"{column} IS NULL"
    if condition.op == "not_null":
        return f"{column} IS NOT NULL"
    if condition.value is None and condition.op in ("eq", "ne"):
        return f"{column} IS NULL" if condition.op == "eq" else f"{column} IS NOT NULL"

    name = f"p{len(params)}"
    if condition.op in ("in", "not_in"):
        params[name] = list(condition.value)
        return f"{column} = ANY(:{name})" if condition.op == "in" else f"{column} <> ALL(:{name})"

    params[name] = condition.value
    return f"{column} {_COMPARISONS[condition.op]} :{name}"

