from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

import yaml

from scaler_core.collaborators.ports import MarketRanker
from scaler_core.errors import CatalogError, CollaboratorError
from scaler_core.phases.catalog import PhaseDefinition
from scaler_core.types import CandidateMarket, MarketSelection, MarketSource
from scaler_core.utils.logs import log_event
from scaler_core.utils.retry import RetryPolicy, call_with_retry


logger = logging.getLogger(__name__)

# identifier, population, businesses per 1k residents, yearly growth pct
DEFAULT_CANDIDATES: list[tuple[str, int, float, float]] = [
    ("Los Angeles, CA", 3980000, 80.4, 0.3),
    ("New York, NY", 8336000, 102.0, 0.1),
    ("Chicago, IL", 2746000, 145.7, -0.2),
    ("Houston, TX", 2314000, 121.0, 1.4),
    ("Phoenix, AZ", 1690000, 109.5, 1.9),
    ("Philadelphia, PA", 1576000, 98.0, 0.0),
    ("San Antonio, TX", 1434000, 95.0, 1.6),
    ("San Diego, CA", 1425000, 105.3, 0.6),
    ("Dallas, TX", 1343000, 122.9, 1.2),
    ("San Jose, CA", 1013000, 104.0, 0.2),
    ("Austin, TX", 978000, 112.5, 2.5),
    ("Jacksonville, FL", 950000, 92.0, 1.8),
    ("Fort Worth, TX", 935000, 88.0, 2.2),
    ("Columbus, OH", 906000, 97.0, 1.1),
    ("Indianapolis, IN", 880000, 94.0, 0.7),
    ("San Francisco, CA", 881000, 136.2, -0.4),
    ("Charlotte, NC", 879000, 115.0, 2.1),
    ("Seattle, WA", 753000, 126.2, 1.3),
    ("Denver, CO", 711000, 131.0, 1.0),
    ("Nashville, TN", 689000, 124.0, 1.7),
    ("Boston, MA", 675000, 133.0, 0.4),
    ("Portland, OR", 652000, 127.0, 0.5),
    ("Las Vegas, NV", 641000, 118.0, 1.9),
    ("Atlanta, GA", 498000, 141.0, 1.5),
    ("Miami, FL", 442000, 148.0, 1.2),
    ("Minneapolis, MN", 425000, 119.0, 0.3),
]


class CandidateDirectory:
    def __init__(self, candidates: Iterable[CandidateMarket]) -> None:
        rows: dict[str, CandidateMarket] = {}
        for row in candidates:
            rows.setdefault(row.identifier, row)
        self._rows = rows

    @classmethod
    def default(cls) -> "CandidateDirectory":
        return cls(CandidateMarket(identifier=i, population=p, density=d, growth=g) for i, p, d, g in DEFAULT_CANDIDATES)

    @classmethod
    def load(cls, path: str | Path | None) -> "CandidateDirectory":
        if path is None:
            return cls.default()
        source = Path(path)
        if not source.exists():
            raise CatalogError(f"Candidate directory not found: {source}")
        raw = yaml.safe_load(source.read_text(encoding="utf-8")) or {}
        rows = raw.get("candidates") if isinstance(raw, dict) else raw
        if not isinstance(rows, list):
            raise CatalogError("Candidate directory must contain a 'candidates' list")
        out: list[CandidateMarket] = []
        for row in rows:
            if not isinstance(row, dict) or not str(row.get("identifier") or "").strip():
                raise CatalogError(f"Invalid candidate row: {row!r}")
            out.append(
                CandidateMarket(
                    identifier=str(row["identifier"]).strip(),
                    population=int(row.get("population") or 0),
                    density=float(row.get("density") or 0.0),
                    growth=float(row.get("growth") or 0.0),
                )
            )
        return cls(out)

    def all(self) -> list[CandidateMarket]:
        return list(self._rows.values())

    def identifiers(self) -> set[str]:
        return set(self._rows)


def fallback_top_n(pool: Sequence[CandidateMarket], n: int) -> list[str]:
    ranked = sorted(pool, key=lambda row: (-row.density, row.identifier))
    return [row.identifier for row in ranked[: max(0, n)]]


def _identifier_of(item: Any) -> str | None:
    if isinstance(item, str):
        return item.strip() or None
    if isinstance(item, dict):
        for key in ("identifier", "market", "city"):
            value = item.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


class MarketSelector:
    def __init__(
        self,
        *,
        directory: CandidateDirectory,
        ranker: MarketRanker | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.directory = directory
        self.ranker = ranker
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    def pool_for(self, active_markets: Iterable[str]) -> list[CandidateMarket]:
        active = set(active_markets)
        return [row for row in self.directory.all() if row.identifier not in active]

    def _validated(self, response: Any, pool: Sequence[CandidateMarket], n: int) -> list[str]:
        if not isinstance(response, (list, tuple)):
            return []
        allowed = {row.identifier for row in pool}
        out: list[str] = []
        for item in response:
            ident = _identifier_of(item)
            if ident is None or ident not in allowed:
                if ident is not None:
                    log_event(logger, "ranked_market_discarded", level=logging.WARNING, market=ident)
                continue
            if ident not in out:
                out.append(ident)
            if len(out) >= n:
                break
        return out

    def _ranked(self, pool: list[CandidateMarket], n: int, phase: PhaseDefinition) -> list[str] | None:
        if self.ranker is None:
            return None
        ranker = self.ranker
        kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        try:
            response = call_with_retry("market_ranker", lambda: ranker.rank(pool, n, phase), self.retry_policy, **kwargs)
        except CollaboratorError as exc:
            log_event(logger, "market_ranker_unavailable", level=logging.WARNING, phase=phase.id, error=str(exc))
            return None
        valid = self._validated(response, pool, n)
        if len(valid) < n:
            log_event(logger, "market_ranker_short", level=logging.WARNING, phase=phase.id, requested=n, valid=len(valid))
            return None
        return valid

    def select(self, phase: PhaseDefinition, active_markets: Iterable[str]) -> MarketSelection:
        active = list(active_markets)
        policy = phase.market_policy
        if policy.is_explicit:
            active_set = set(active)
            fresh: list[str] = []
            for market in policy.explicit or []:
                if market not in active_set and market not in fresh:
                    fresh.append(market)
            return MarketSelection(markets=fresh, source=MarketSource.EXPLICIT)

        pool = self.pool_for(active)
        n = min(int(policy.select_top or 0), len(pool))
        if n <= 0:
            return MarketSelection(markets=[], source=MarketSource.FALLBACK)
        ranked = self._ranked(pool, n, phase)
        if ranked is not None:
            return MarketSelection(markets=ranked, source=MarketSource.RANKED)
        chosen = fallback_top_n(pool, n)
        log_event(logger, "market_selection_fallback", phase=phase.id, markets=chosen)
        return MarketSelection(markets=chosen, source=MarketSource.FALLBACK)
