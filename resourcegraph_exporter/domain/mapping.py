"""Result-to-metric mapper.

Turns the rows of one query result into metric samples using the query's
:class:`~resourcegraph_exporter.config.models.MetricTemplate`. The mapper is
pure and row-fault-tolerant: a row whose template columns cannot be
resolved, or whose value is not numeric and has no default, is skipped and
reported while the rest of the batch is mapped. Duplicate series are the
exception: they make the whole batch unusable and raise
:class:`~resourcegraph_exporter.errors.DuplicateSeriesError`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

from ..config.models import LabelSource, MetricTemplate, RegexpFilter
from ..errors import (
    DuplicateSeriesError,
    MappingError,
    TemplateResolutionError,
    ValueCoercionError,
)
from .models import MetricSample, ResultRow
from .utils.validation import coerce_value, format_label_value, sanitize_metric_name

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class MappingResult:
    """Samples produced from one batch plus the rows that were skipped.

    Attributes
    ----------
    samples : List[MetricSample]
        Samples in row order (and template value order within a row).
    row_errors : List[MappingError]
        One entry per skipped row.
    missing_columns : List[str]
        Template columns absent from the first row (diagnostic only).
    """

    samples: List[MetricSample] = field(default_factory=list)
    row_errors: List[MappingError] = field(default_factory=list)
    missing_columns: List[str] = field(default_factory=list)

    @property
    def skipped_rows(self) -> int:
        """Number of rows that produced no samples because of an error."""
        return len(self.row_errors)

    def errors_by_type(self) -> Dict[str, int]:
        """Count skipped rows per error type."""
        counts: Dict[str, int] = {}
        for err in self.row_errors:
            counts[err.error_type] = counts.get(err.error_type, 0) + 1
        return counts


def map_rows(
    rows: Sequence[ResultRow],
    template: MetricTemplate,
    query_name: str = "",
) -> MappingResult:
    """Map ``rows`` to samples according to ``template``.

    Parameters
    ----------
    rows : Sequence[ResultRow]
        Query result rows in delivery order.
    template : MetricTemplate
        Validated row-to-sample template.
    query_name : str
        Used in log records and in :class:`DuplicateSeriesError`.

    Returns
    -------
    MappingResult
        Samples and per-row errors.

    Raises
    ------
    DuplicateSeriesError
        If two samples share metric name and label set.
    """
    result = MappingResult()
    if rows:
        result.missing_columns = [
            c for c in template.referenced_columns() if c not in rows[0]
        ]
        if result.missing_columns:
            logger.warning(
                "mapping.columns_missing",
                extra={
                    "query": query_name,
                    "columns": result.missing_columns,
                    "available": list(rows[0].keys()),
                },
            )

    seen: Dict[Tuple[str, frozenset], int] = {}
    for index, row in enumerate(rows):
        try:
            row_samples = map_row(row, template, index)
        except MappingError as exc:
            result.row_errors.append(exc)
            continue
        for sample in row_samples:
            key = sample.series_key()
            if key in seen:
                raise DuplicateSeriesError(query_name, sample.name, sample.label_dict())
            seen[key] = index
            result.samples.append(sample)

    if result.row_errors:
        logger.info(
            "mapping.rows_skipped",
            extra={
                "query": query_name,
                "rows": len(rows),
                "skipped": result.skipped_rows,
                "by_type": result.errors_by_type(),
                "first_error": str(result.row_errors[0]),
            },
        )
    return result


def map_row(row: ResultRow, template: MetricTemplate, index: int) -> List[MetricSample]:
    """Map a single row; raises a :class:`MappingError` subclass on failure."""
    base_name = resolve_metric_name(row, template, index)
    labels = {
        label: resolve_label(row, label, source, index)
        for label, source in template.labels.items()
    }
    samples: List[MetricSample] = []
    for suffix, source in template.value_sources().items():
        name = f"{base_name}_{suffix}" if suffix else base_name
        if source.column is None:
            value = source.default
        else:
            cell = row.get(source.column, _MISSING)
            value = None if cell is _MISSING else coerce_value(cell)
            if value is None:
                value = source.default
            if value is None:
                raise ValueCoercionError(
                    f"row {index}: column {source.column!r} value "
                    f"{cell if cell is not _MISSING else '<missing>'!r} "
                    "is not numeric and no default is declared",
                    row_index=index,
                    column=source.column,
                )
        samples.append(MetricSample.create(name, labels, value))
    return samples


def resolve_metric_name(row: ResultRow, template: MetricTemplate, index: int) -> str:
    """Return the metric name for ``row`` (literal, dynamic, or both)."""
    if not template.name_column:
        return template.name or ""
    cell = row.get(template.name_column, _MISSING)
    if cell is _MISSING or cell is None or cell == "":
        raise TemplateResolutionError(
            f"row {index}: metric name column {template.name_column!r} is missing",
            row_index=index,
            column=template.name_column,
        )
    raw = format_label_value(cell)
    if template.name:
        raw = f"{template.name}_{raw}"
    name = sanitize_metric_name(raw)
    if name is None:
        raise TemplateResolutionError(
            f"row {index}: {raw!r} cannot be turned into a metric name",
            row_index=index,
            column=template.name_column,
        )
    return name


def resolve_label(row: ResultRow, label: str, source: LabelSource, index: int) -> str:
    """Return the string value of one label for ``row``."""
    if source.column is None:
        value = source.value or ""
    else:
        cell = row.get(source.column, _MISSING)
        if cell is _MISSING:
            if source.default is None:
                raise TemplateResolutionError(
                    f"row {index}: label {label!r} column {source.column!r} is missing",
                    row_index=index,
                    column=source.column,
                )
            value = source.default
        elif cell is None and source.default is not None:
            value = source.default
        else:
            value = format_label_value(cell)
    return apply_filters(value, source.filters)


def apply_filters(value: str, filters: Sequence[object]) -> str:
    """Apply label filters in declaration order."""
    for item in filters:
        if isinstance(item, RegexpFilter):
            value = item.regexp.sub(item.replacement, value)
            continue
        op = str(item).lower()
        if op == "tolower":
            value = value.lower()
        elif op == "toupper":
            value = value.upper()
        elif op == "trim":
            value = value.strip()
    return value
