"""
ASIN filter strategies for the warehouse aggregation query.

A strategy only shapes the warehouse-side WHERE clause. Rows are never
filtered after they are fetched.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional
import re

from core.exceptions import ConfigurationError

ASIN_COLUMN = "`Child ASIN`"
IMPRESSIONS_COLUMN = "`ASIN Impression Count`"
DATE_COLUMN = "`Date`"

_ASIN_PATTERN = re.compile(r"^[A-Za-z0-9]{1,20}$")


class AsinFilter(ABC):
    """Base class of the ASIN selection strategies"""

    name: str = ""

    @abstractmethod
    def build_clause(self, table_ref: str) -> str:
        """
        Return a predicate appended to the aggregation WHERE clause.

        Args:
            table_ref: Escaped, fully qualified source table

        Returns:
            ``""`` for no filtering, otherwise a string starting with ``AND``
        """
        pass

    def describe(self) -> Dict[str, Any]:
        return {"strategy": self.name}

    def _ranked_subquery(self, table_ref: str, rank_expression: str) -> str:
        return (
            f"SELECT asin, {rank_expression} AS asin_rank FROM ("
            f"SELECT {ASIN_COLUMN} AS asin, SUM({IMPRESSIONS_COLUMN}) AS impressions "
            f"FROM {table_ref} "
            f"WHERE {DATE_COLUMN} BETWEEN @start_date AND @end_date "
            f"GROUP BY asin)"
        )


class AllAsins(AsinFilter):
    name = "all"

    def build_clause(self, table_ref: str) -> str:
        return ""


class SpecificAsins(AsinFilter):
    """Explicit identifier list, validated so it can be inlined safely"""

    name = "specific"

    def __init__(self, asins: Iterable[str]):
        cleaned: List[str] = []
        for asin in asins:
            asin = (asin or "").strip()
            if not _ASIN_PATTERN.match(asin):
                raise ConfigurationError(
                    f"Invalid ASIN: {asin!r}",
                    context={"asin": asin}
                )
            if asin not in cleaned:
                cleaned.append(asin)

        if not cleaned:
            raise ConfigurationError("The specific filter needs at least one ASIN")

        self.asins = cleaned

    def build_clause(self, table_ref: str) -> str:
        values = ", ".join(f"'{asin}'" for asin in self.asins)
        return f"AND {ASIN_COLUMN} IN ({values})"

    def describe(self) -> Dict[str, Any]:
        return {"strategy": self.name, "asins": list(self.asins)}


class TopAsins(AsinFilter):
    """Top N ASINs by summed impressions over the sync window"""

    name = "top"

    def __init__(self, count: int):
        if count is None or count < 1:
            raise ConfigurationError(
                "The top filter needs a positive count",
                context={"count": count}
            )
        self.count = int(count)

    def build_clause(self, table_ref: str) -> str:
        ranked = self._ranked_subquery(
            table_ref, "ROW_NUMBER() OVER (ORDER BY impressions DESC, asin)"
        )
        return (
            f"AND {ASIN_COLUMN} IN ("
            f"SELECT asin FROM ({ranked}) WHERE asin_rank <= {self.count})"
        )

    def describe(self) -> Dict[str, Any]:
        return {"strategy": self.name, "count": self.count}


class RepresentativeAsins(AsinFilter):
    """Top decile of ASINs by percentile of summed impressions"""

    name = "representative"

    def __init__(self, percentile: float = 0.1):
        if not 0 < percentile <= 1:
            raise ConfigurationError(
                "Representative percentile must be in (0, 1]",
                context={"percentile": percentile}
            )
        self.percentile = percentile

    def build_clause(self, table_ref: str) -> str:
        ranked = self._ranked_subquery(
            table_ref, "PERCENT_RANK() OVER (ORDER BY impressions DESC, asin)"
        )
        return (
            f"AND {ASIN_COLUMN} IN ("
            f"SELECT asin FROM ({ranked}) WHERE asin_rank <= {self.percentile})"
        )

    def describe(self) -> Dict[str, Any]:
        return {"strategy": self.name, "percentile": self.percentile}


FILTER_CHOICES = ("all", "specific", "top", "representative")


def build_asin_filter(
    strategy: str = "all",
    asins: Optional[Iterable[str]] = None,
    count: Optional[int] = None,
) -> AsinFilter:
    """
    Build a filter from CLI-style options.

    Passing ``asins`` with the default strategy selects ``specific``.
    """
    if strategy == "all" and asins:
        strategy = "specific"

    if strategy == "all":
        return AllAsins()
    if strategy == "specific":
        return SpecificAsins(asins or [])
    if strategy == "top":
        return TopAsins(count if count is not None else 10)
    if strategy == "representative":
        return RepresentativeAsins()

    raise ConfigurationError(
        f"Unknown ASIN filter strategy: {strategy}",
        context={"choices": list(FILTER_CHOICES)}
    )
