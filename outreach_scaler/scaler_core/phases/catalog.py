from __future__ import annotations

from pathlib import Path
from typing import Any, Iterator

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from scaler_core.collaborators.metrics import METRIC_VOCABULARY
from scaler_core.errors import CatalogError
from scaler_core.types import Comparator


class SuccessCriterion(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    metric: str = Field(min_length=1)
    comparator: Comparator = Comparator.GTE
    threshold: float

    @field_validator("threshold", mode="before")
    @classmethod
    def _bool_threshold(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return 1.0 if value else 0.0
        return value


class MarketPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    explicit: list[str] | None = None
    select_top: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _exactly_one(self) -> "MarketPolicy":
        if (self.explicit is None) == (self.select_top is None):
            raise ValueError("market_policy needs exactly one of explicit / select_top")
        return self

    @property
    def is_explicit(self) -> bool:
        return self.explicit is not None


class PhaseDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    order: int
    name: str
    duration: str = ""
    target_kpis: dict[str, float] = Field(default_factory=dict)
    market_policy: MarketPolicy = Field(default_factory=lambda: MarketPolicy(explicit=[]))
    feature_set: list[str] = Field(default_factory=list)
    channels: list[str] = Field(default_factory=list)
    success_criteria: list[SuccessCriterion] = Field(default_factory=list)
    messaging_template: str | None = None
    targeting: dict[str, Any] = Field(default_factory=dict)

    @field_validator("feature_set", "channels")
    @classmethod
    def _dedupe(cls, values: list[str]) -> list[str]:
        return list(dict.fromkeys(str(v) for v in values))


DEFAULT_PHASES: list[dict[str, Any]] = [
    {
        "id": "mvp",
        "order": 1,
        "name": "Phase 1: MVP Validation",
        "duration": "1-2 months",
        "target_kpis": {"cities": 1, "customers": 10, "mrr": 1970},
        "market_policy": {"explicit": ["Los Angeles, CA"]},
        "feature_set": ["email_outreach"],
        "channels": ["email"],
        "success_criteria": [
            {"metric": "daysRunning", "comparator": ">=", "threshold": 45},
            {"metric": "payingCustomers", "comparator": ">=", "threshold": 20},
            {"metric": "monthlyRecurringRevenue", "comparator": ">=", "threshold": 4000},
            {"metric": "conversionRate", "comparator": ">=", "threshold": 10},
            {"metric": "churnRate", "comparator": "<=", "threshold": 5},
        ],
        "messaging_template": "mvp_no_website",
        "targeting": {"target_no_website": True, "target_existing_website": False},
    },
    {
        "id": "automation",
        "order": 2,
        "name": "Phase 2: Automation & Multi-Market",
        "duration": "2-4 months",
        "target_kpis": {"cities": 10, "customers": 100, "mrr": 19700},
        "market_policy": {
            "explicit": [
                "Los Angeles, CA",
                "San Diego, CA",
                "San Francisco, CA",
                "Phoenix, AZ",
                "Las Vegas, NV",
                "San Jose, CA",
                "Austin, TX",
                "Dallas, TX",
                "Denver, CO",
                "Seattle, WA",
            ]
        },
        "feature_set": ["ab_testing", "multi_channel_outreach", "advanced_personalization", "automated_follow_ups", "customer_segmentation"],
        "channels": ["email", "social_media", "cold_calling"],
        "success_criteria": [
            {"metric": "payingCustomers", "comparator": ">=", "threshold": 100},
            {"metric": "monthlyRecurringRevenue", "comparator": ">=", "threshold": 19700},
            {"metric": "conversionRate", "comparator": ">=", "threshold": 3},
            {"metric": "customerSatisfaction", "comparator": ">=", "threshold": 4.2},
            {"metric": "churnRate", "comparator": "<=", "threshold": 8},
            {"metric": "systemUptime", "comparator": ">=", "threshold": 99},
        ],
        "messaging_template": "existing_website_affordable_alternative",
        "targeting": {
            "target_no_website": True,
            "target_existing_website": True,
            "industries": [
                "lawyer",
                "attorney",
                "dentist",
                "plumber",
                "electrician",
                "hvac",
                "landscaper",
                "roofer",
                "insurance agent",
                "accountant",
                "chiropractor",
            ],
        },
    },
    {
        "id": "scale",
        "order": 3,
        "name": "Phase 3: National Expansion",
        "duration": "4-8 months",
        "target_kpis": {"cities": 50, "customers": 500, "mrr": 98500},
        "market_policy": {"select_top": 10},
        "feature_set": ["industry_templates", "upselling", "white_label", "partner_api", "advanced_analytics", "predictive_lead_scoring"],
        "channels": ["email", "social_media", "cold_calling", "partnerships", "seo"],
        "success_criteria": [
            {"metric": "payingCustomers", "comparator": ">=", "threshold": 500},
            {"metric": "monthlyRecurringRevenue", "comparator": ">=", "threshold": 98500},
            {"metric": "conversionRate", "comparator": ">=", "threshold": 4},
            {"metric": "customerSatisfaction", "comparator": ">=", "threshold": 4.5},
            {"metric": "churnRate", "comparator": "<=", "threshold": 5},
            {"metric": "marketPenetration", "comparator": ">=", "threshold": 0.1},
        ],
        "messaging_template": "national_industry_templates",
        "targeting": {"target_no_website": True, "target_existing_website": True, "industries": "all"},
    },
    {
        "id": "international",
        "order": 4,
        "name": "Phase 4: International Expansion",
        "duration": "ongoing",
        "target_kpis": {"customers": 1000, "mrr": 197000},
        "market_policy": {
            "explicit": [
                "Mexico City, Mexico",
                "Guadalajara, Mexico",
                "Monterrey, Mexico",
                "Toronto, Canada",
                "Vancouver, Canada",
                "London, UK",
            ]
        },
        "feature_set": ["multi_language", "currency_localization", "regional_templates", "international_payments", "timezone_optimization"],
        "channels": ["email", "social_media", "partnerships", "seo"],
        "success_criteria": [
            {"metric": "conversionRate", "comparator": ">=", "threshold": 3},
            {"metric": "customerSatisfaction", "comparator": ">=", "threshold": 4.3},
            {"metric": "churnRate", "comparator": "<=", "threshold": 7},
        ],
        "messaging_template": "international_localized",
        "targeting": {"target_no_website": True, "target_existing_website": True, "localized": True},
    },
]


class PhaseCatalog:
    """Ordered, immutable list of phases. Only forward edges phase[i] -> phase[i+1] exist."""

    def __init__(self, phases: list[PhaseDefinition]) -> None:
        if not phases:
            raise CatalogError("Phase catalog is empty")
        ordered = sorted(phases, key=lambda row: row.order)
        ids = [row.id for row in ordered]
        if len(set(ids)) != len(ids):
            raise CatalogError(f"Duplicate phase ids in catalog: {ids}")
        orders = [row.order for row in ordered]
        if any(b != a + 1 for a, b in zip(orders, orders[1:])):
            raise CatalogError(f"Phase orders must increase by exactly one: {orders}")
        unknown = sorted({c.metric for row in ordered for c in row.success_criteria} - set(METRIC_VOCABULARY))
        if unknown:
            raise CatalogError(f"Success criteria use metrics outside the vocabulary: {unknown}")
        self._phases: tuple[PhaseDefinition, ...] = tuple(ordered)
        self._by_id = {row.id: row for row in ordered}

    @classmethod
    def from_rows(cls, rows: list[dict[str, Any]]) -> "PhaseCatalog":
        try:
            return cls([PhaseDefinition.model_validate(row) for row in rows])
        except ValidationError as exc:
            raise CatalogError(f"Invalid phase catalog: {exc}") from exc

    @classmethod
    def default(cls) -> "PhaseCatalog":
        return cls.from_rows(DEFAULT_PHASES)

    @classmethod
    def load(cls, path: str | Path | None) -> "PhaseCatalog":
        if path is None:
            return cls.default()
        catalog_path = Path(path)
        if not catalog_path.exists():
            raise CatalogError(f"Catalog file not found: {catalog_path}")
        try:
            raw = yaml.safe_load(catalog_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise CatalogError(f"Invalid catalog YAML: {exc}") from exc
        rows = raw.get("phases") if isinstance(raw, dict) else raw
        if not isinstance(rows, list):
            raise CatalogError("Catalog file must contain a 'phases' list")
        return cls.from_rows(rows)

    def __iter__(self) -> Iterator[PhaseDefinition]:
        return iter(self._phases)

    def __len__(self) -> int:
        return len(self._phases)

    def __contains__(self, phase_id: object) -> bool:
        return phase_id in self._by_id

    @property
    def first(self) -> PhaseDefinition:
        return self._phases[0]

    @property
    def last(self) -> PhaseDefinition:
        return self._phases[-1]

    def get(self, phase_id: str) -> PhaseDefinition:
        try:
            return self._by_id[phase_id]
        except KeyError:
            raise CatalogError(f"Unknown phase id: {phase_id}") from None

    def next_after(self, phase_id: str) -> PhaseDefinition | None:
        current = self.get(phase_id)
        idx = self._phases.index(current)
        if idx + 1 >= len(self._phases):
            return None
        return self._phases[idx + 1]

    def is_terminal(self, phase_id: str) -> bool:
        return self.next_after(phase_id) is None

    def to_list(self) -> list[dict[str, Any]]:
        return [row.model_dump(mode="json") for row in self._phases]
