"""Remote query transport interface.

The query client only needs "a callable that executes a query string
against a subscription set and returns one page of rows". Adapters in this
package implement that callable for the Azure Resource Graph REST API;
tests implement it with in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence

from ..domain.models import ResultRow


@dataclass
class QueryPage:
    """One page of a tabular query result.

    Attributes
    ----------
    rows: List[ResultRow]
        Rows of this page, in delivery order, each mapping column to cell.
    skip_token: Optional[str]
        Continuation token; None on the last page.
    total_records: Optional[int]
        Total row count reported by the service, when known.
    """

    rows: List[ResultRow] = field(default_factory=list)
    skip_token: Optional[str] = None
    total_records: Optional[int] = None


class QueryTransport(Protocol):
    """Protocol for page-level query execution.

    Implementations raise :class:`~resourcegraph_exporter.errors.RemoteQueryError`
    for every failure, flagging transient ones so the client can retry.
    """

    async def __call__(
        self,
        query: str,
        subscriptions: Sequence[str],
        skip_token: Optional[str] = None,
    ) -> QueryPage:
        """Execute ``query`` and return the page at ``skip_token``."""
        raise NotImplementedError


def rows_from_table(columns: Sequence[dict], rows: Sequence[Sequence]) -> List[ResultRow]:
    """Convert a ``table`` result (columns + positional rows) to row dicts.

    Column order is preserved in every row dict. Short rows are padded with
    None so every row carries every column.
    """
    names = [str(c.get("name")) for c in columns]
    out: List[ResultRow] = []
    for raw in rows:
        cells = list(raw) + [None] * (len(names) - len(raw))
        out.append(dict(zip(names, cells)))
    return out
