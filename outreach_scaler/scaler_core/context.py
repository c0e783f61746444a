"""Composition root: the only place concrete collaborators are chosen and wired."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from scaler_core.collaborators.llm import ChatCompletionsClient, LlmMarketRanker, LlmRecommendationSource
from scaler_core.collaborators.metrics import FileMetricsProvider, HttpMetricsProvider, StaticMetricsProvider
from scaler_core.collaborators.notify import FanoutNotifier, LogNotifier, TelegramNotifier, WebhookNotifier
from scaler_core.collaborators.ports import MarketRanker, MetricsProvider, Notifier, RecommendationSource, ensure_implements
from scaler_core.config import PROJECT_ROOT, EngineConfig
from scaler_core.persistence.state_store import AdvisoryLog, StateStore
from scaler_core.phases.advisor import OptimizerAdvisor
from scaler_core.phases.catalog import PhaseCatalog
from scaler_core.phases.criteria import CriteriaEvaluator
from scaler_core.phases.engine import EngineParts, PhaseEngine
from scaler_core.phases.executor import TransitionExecutor
from scaler_core.phases.markets import CandidateDirectory, MarketSelector
from scaler_core.phases.scheduler import EvaluationScheduler
from scaler_core.utils.retry import RetryPolicy


def _project_path(raw: str) -> Path:
    path = Path(raw)
    return path if path.is_absolute() else (PROJECT_ROOT / path)


@dataclass(slots=True)
class EngineContext:
    config: EngineConfig
    catalog: PhaseCatalog
    directory: CandidateDirectory
    metrics_provider: MetricsProvider
    ranker: MarketRanker | None
    recommender: RecommendationSource | None
    notifier: Notifier
    store: StateStore
    advisories: AdvisoryLog
    engine: PhaseEngine
    scheduler: EvaluationScheduler


def default_metrics_provider(cfg: EngineConfig) -> MetricsProvider:
    metrics = cfg.metrics
    if metrics.source == "static":
        return StaticMetricsProvider(metrics.static)
    if metrics.source == "http":
        return HttpMetricsProvider(
            url=str(metrics.url),
            token=metrics.token,
            envelope_key=metrics.envelope_key,
            timeout=cfg.retry.timeout_sec,
        )
    return FileMetricsProvider(_project_path(metrics.path))


def default_llm_collaborators(cfg: EngineConfig) -> tuple[MarketRanker | None, RecommendationSource | None]:
    llm = cfg.llm
    if not llm.enabled or not llm.api_key:
        return None, None
    client = ChatCompletionsClient(
        api_key=llm.api_key,
        base_url=llm.base_url,
        model=llm.model,
        temperature=llm.temperature,
        timeout=cfg.retry.timeout_sec,
    )
    return LlmMarketRanker(client), LlmRecommendationSource(client)


def default_notifier(cfg: EngineConfig) -> Notifier:
    notes = cfg.notifications
    channels: list[Notifier] = []
    if notes.log_enabled:
        channels.append(LogNotifier())
    if notes.telegram_enabled and notes.bot_token and notes.chat_id:
        channels.append(TelegramNotifier(bot_token=notes.bot_token, chat_id=notes.chat_id))
    if notes.webhook_url:
        channels.append(WebhookNotifier(url=notes.webhook_url))
    if not channels:
        channels.append(LogNotifier())
    return channels[0] if len(channels) == 1 else FanoutNotifier(channels)


def build_context(
    cfg: EngineConfig,
    *,
    catalog: PhaseCatalog | None = None,
    directory: CandidateDirectory | None = None,
    metrics_provider: MetricsProvider | None = None,
    ranker: MarketRanker | None = None,
    recommender: RecommendationSource | None = None,
    notifier: Notifier | None = None,
    store: StateStore | None = None,
    sleep: Callable[[float], None] | None = None,
) -> EngineContext:
    """Wire the engine from config; any collaborator can be passed in explicitly instead."""
    catalog = catalog or PhaseCatalog.load(_project_path(cfg.catalog.path) if cfg.catalog.path else None)
    directory = directory or CandidateDirectory.load(_project_path(cfg.catalog.candidates_path) if cfg.catalog.candidates_path else None)
    metrics_provider = metrics_provider or default_metrics_provider(cfg)
    if ranker is None and recommender is None:
        ranker, recommender = default_llm_collaborators(cfg)
    notifier = notifier or default_notifier(cfg)

    ensure_implements(metrics_provider, MetricsProvider, "metrics")
    ensure_implements(notifier, Notifier, "notifier")
    if ranker is not None:
        ensure_implements(ranker, MarketRanker, "ranker")
    if recommender is not None:
        ensure_implements(recommender, RecommendationSource, "recommender")

    retry_policy = RetryPolicy.from_config(cfg.retry)
    store = store or StateStore(cfg.storage.state_path())
    advisories = AdvisoryLog(cfg.storage.advisories_path(), keep=cfg.storage.advisories_keep)
    selector = MarketSelector(directory=directory, ranker=ranker, retry_policy=retry_policy, sleep=sleep)
    parts = EngineParts(
        catalog=catalog,
        evaluator=CriteriaEvaluator(pass_fraction=cfg.evaluation.pass_fraction),
        executor=TransitionExecutor(catalog=catalog, selector=selector, store=store),
        advisor=OptimizerAdvisor(source=recommender, log=advisories, retry_policy=retry_policy, limit=cfg.llm.max_recommendations, sleep=sleep),
        store=store,
        advisories=advisories,
        metrics_provider=metrics_provider,
        notifier=notifier,
        retry_policy=retry_policy,
    )
    engine = PhaseEngine(parts, sleep=sleep)
    scheduler = EvaluationScheduler(
        engine,
        interval_sec=cfg.evaluation.interval_hours * 3600.0,
        run_on_start=cfg.evaluation.run_on_start,
    )
    return EngineContext(
        config=cfg,
        catalog=catalog,
        directory=directory,
        metrics_provider=metrics_provider,
        ranker=ranker,
        recommender=recommender,
        notifier=notifier,
        store=store,
        advisories=advisories,
        engine=engine,
        scheduler=scheduler,
    )
