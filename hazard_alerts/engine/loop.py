"""
Rule Engine — the periodic evaluation loop.

Every tick evaluates each active rule against recent reports, social
signals and official feeds. A rule whose conditions all hold, and whose
cooldown has elapsed, fires: its alert is composed, dispatched and its
cooldown recorded.

Per-rule states within one cycle:
  IDLE → EVALUATING → (NOT_TRIGGERED | TRIGGERED_IN_COOLDOWN | FIRED)

Isolation:
  - A failing condition or rule never aborts the cycle.
  - A slow rule is abandoned after `rule_timeout_seconds`.
  - A crashing tick is logged and the next tick still runs.

Operational constraint: run one engine per deployment. Several engines
sharing a store without a distributed lock will send duplicate alerts.
"""

import asyncio
from datetime import datetime
from typing import Callable, List, Optional, Tuple

import structlog

from hazard_alerts.composer.templates import AlertComposer
from hazard_alerts.conditions.evaluators import EvaluationContext, evaluate_condition
from hazard_alerts.cooldown.tracker import CooldownTracker
from hazard_alerts.data.store import DataStore
from hazard_alerts.dispatch.dispatcher import NotificationDispatcher, manual_alert_actions
from hazard_alerts.errors import ConditionEvaluationError, DataAccessError, EngineFatalError
from hazard_alerts.models.alert import Alert, TriggerEvent
from hazard_alerts.models.dispatch import DispatchResult
from hazard_alerts.models.engine import CycleReport, EngineConfig, RuleEvaluation, RuleState
from hazard_alerts.models.rule import GeographicScope, Rule, Severity

logger = structlog.get_logger(__name__)


class EngineState:
    """Mutable engine state, owned by exactly one RuleEngine."""

    def __init__(self):
        self.running = False
        self.rules: Tuple[Rule, ...] = ()   # Replaced wholesale on refresh
        self.rules_loaded_at: Optional[datetime] = None
        self.cycles_run = 0
        self.last_cycle: Optional[CycleReport] = None
        self.last_error: Optional[str] = None


class RuleEngine:
    """Owns the active rule set and runs evaluation cycles over it."""

    def __init__(
        self,
        store: DataStore,
        dispatcher: Optional[NotificationDispatcher] = None,
        cooldowns: Optional[CooldownTracker] = None,
        composer: Optional[AlertComposer] = None,
        config: Optional[EngineConfig] = None,
        observer: Optional[Callable[[RuleEvaluation], None]] = None,
    ):
        self.store = store
        self.config = config or EngineConfig()
        self.dispatcher = dispatcher or NotificationDispatcher(store, config=self.config)
        self.cooldowns = cooldowns or CooldownTracker(store, key_mode=self.config.cooldown_key)
        self.composer = composer or AlertComposer()
        self.observer = observer

        self._state = EngineState()
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def status(self) -> str:
        return "running" if self._state.running else "stopped"

    @property
    def rules(self) -> Tuple[Rule, ...]:
        """The rule set the next cycle will evaluate."""
        return self._state.rules

    @property
    def last_cycle(self) -> Optional[CycleReport]:
        return self._state.last_cycle

    # --- Rule set ---

    def refresh_rules(self, now: Optional[datetime] = None) -> int:
        """
        Reload active rules from the store. If the store is unreachable the
        last-known-good set stays in place. Returns the number of rules held.
        """
        if now is None:
            now = datetime.utcnow()
        try:
            loaded = self.store.list_active_rules()
        except DataAccessError as e:
            error = EngineFatalError(f"Rules store unreachable: {e}")
            self._state.last_error = str(error)
            logger.error(
                "rules_refresh_failed",
                error=str(error),
                keeping=len(self._state.rules),
            )
            return len(self._state.rules)

        active = [r for r in loaded if r.is_active and r.conditions]
        active.sort(key=lambda r: r.priority.rank, reverse=True)
        self._state.rules = tuple(active)
        self._state.rules_loaded_at = now
        logger.info("rules_loaded", count=len(active))
        return len(active)

    def _refresh_due(self, now: datetime) -> bool:
        loaded_at = self._state.rules_loaded_at
        if loaded_at is None:
            return True
        return (now - loaded_at).total_seconds() >= self.config.rule_refresh_interval_seconds

    # --- Evaluation ---

    def evaluate_rule(self, rule: Rule, now: Optional[datetime] = None) -> RuleEvaluation:
        """
        AND-combine the rule's conditions, stopping at the first one that
        does not hold. Reads only; decides nothing about cooldown.
        """
        if now is None:
            now = datetime.utcnow()

        evaluation = RuleEvaluation(
            rule_id=rule.id,
            rule_name=rule.name,
            state=RuleState.EVALUATING,
            evaluated_at=now,
        )
        logger.debug("rule_evaluating", rule_id=rule.id, conditions=len(rule.conditions))

        if not rule.conditions:
            evaluation.state = RuleState.NOT_TRIGGERED
            evaluation.error = "Rule has no conditions"
            return evaluation

        ctx = EvaluationContext(
            store=self.store,
            now=now,
            hazard_type=rule.hazard_type,
            geo_scope=rule.geographic_scope,
            default_window_minutes=rule.time_window_minutes,
        )

        try:
            for condition in rule.conditions:
                result = evaluate_condition(condition, ctx)
                evaluation.condition_results.append(result)
                if result.error:
                    logger.warning(
                        "condition_data_error",
                        rule_id=rule.id,
                        condition=result.kind,
                        error=result.error,
                    )
                if not result.met:
                    evaluation.state = RuleState.NOT_TRIGGERED
                    return evaluation
                evaluation.trigger_data.update(result.context)
        except ConditionEvaluationError as e:
            logger.warning("rule_misconfigured", rule_id=rule.id, error=str(e))
            evaluation.state = RuleState.NOT_TRIGGERED
            evaluation.error = str(e)
            return evaluation
        except Exception as e:
            logger.exception("rule_error", rule_id=rule.id)
            evaluation.state = RuleState.NOT_TRIGGERED
            evaluation.error = str(e)
            return evaluation

        evaluation.conditions_met = True
        return evaluation

    async def process_rule(self, rule: Rule, now: datetime) -> RuleEvaluation:
        """Evaluate one rule under the per-rule timeout, then settle its state."""
        try:
            evaluation = await asyncio.wait_for(
                asyncio.to_thread(self.evaluate_rule, rule, now),
                timeout=self.config.rule_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "rule_timeout",
                rule_id=rule.id,
                timeout_seconds=self.config.rule_timeout_seconds,
            )
            evaluation = RuleEvaluation(
                rule_id=rule.id,
                rule_name=rule.name,
                state=RuleState.NOT_TRIGGERED,
                evaluated_at=now,
                error="Evaluation timed out",
            )
            self._observe(evaluation)
            return evaluation

        return await self._settle(rule, evaluation, now)

    async def _settle(
        self, rule: Rule, evaluation: RuleEvaluation, now: datetime
    ) -> RuleEvaluation:
        if not evaluation.conditions_met:
            evaluation.state = RuleState.NOT_TRIGGERED
            logger.debug("rule_not_triggered", rule_id=rule.id, error=evaluation.error)
            self._observe(evaluation)
            return evaluation

        key = self.cooldowns.rule_key(rule)
        if not self.cooldowns.claim(key, now, rule.cooldown_minutes):
            evaluation.state = RuleState.TRIGGERED_IN_COOLDOWN
            logger.info(
                "rule_suppressed",
                rule_id=rule.id,
                cooldown_key=key,
                cooldown_minutes=rule.cooldown_minutes,
            )
            self._observe(evaluation)
            return evaluation

        trigger = TriggerEvent(
            rule_id=rule.id,
            evaluated_at=now,
            trigger_data=dict(evaluation.trigger_data),
        )
        alert = self.composer.compose(rule, trigger)

        try:
            result = await self.dispatcher.dispatch(alert, rule.actions, rule=rule, now=now)
        except Exception as e:
            logger.exception("rule_dispatch_error", rule_id=rule.id, alert_id=alert.id)
            evaluation.state = RuleState.FIRED
            evaluation.alert_id = alert.id
            evaluation.error = str(e)
            self._observe(evaluation)
            return evaluation

        if not result.persisted:
            # No alert exists, so the firing never happened.
            self.cooldowns.release(key, now)
            evaluation.state = RuleState.NOT_TRIGGERED
            evaluation.error = result.error
            logger.warning(
                "rule_fire_aborted",
                rule_id=rule.id,
                alert_id=alert.id,
                error=result.error,
            )
            self._observe(evaluation)
            return evaluation

        evaluation.state = RuleState.FIRED
        evaluation.alert_id = alert.id
        if result.error:
            evaluation.error = result.error

        logger.info(
            "rule_fired",
            rule_id=rule.id,
            alert_id=alert.id,
            trigger_data=evaluation.trigger_data,
        )
        self._observe(evaluation)
        return evaluation

    async def _guarded(
        self, rule: Rule, now: datetime, semaphore: asyncio.Semaphore
    ) -> RuleEvaluation:
        async with semaphore:
            try:
                return await self.process_rule(rule, now)
            except Exception as e:
                logger.exception("rule_error", rule_id=rule.id)
                evaluation = RuleEvaluation(
                    rule_id=rule.id,
                    rule_name=rule.name,
                    state=RuleState.NOT_TRIGGERED,
                    evaluated_at=now,
                    error=str(e),
                )
                self._observe(evaluation)
                return evaluation

    def _observe(self, evaluation: RuleEvaluation) -> None:
        if self.observer is None:
            return
        try:
            self.observer(evaluation)
        except Exception as e:
            logger.warning("observer_failed", rule_id=evaluation.rule_id, error=str(e))

    async def run_cycle(self, now: Optional[datetime] = None) -> CycleReport:
        """
        Run a single evaluation cycle over the current rule set.
        Rules are evaluated with bounded concurrency, highest priority first.
        """
        if now is None:
            now = datetime.utcnow()

        rules = self._state.rules
        report = CycleReport(started_at=now, rules_loaded=len(rules))
        logger.debug("cycle_started", rules=len(rules))

        semaphore = asyncio.Semaphore(self.config.max_concurrent_evaluations)
        report.evaluations = list(await asyncio.gather(
            *(self._guarded(rule, now, semaphore) for rule in rules)
        ))
        report.finished_at = datetime.utcnow()

        self._state.last_cycle = report
        self._state.cycles_run += 1
        logger.info(
            "cycle_finished",
            rules=len(rules),
            fired=report.count(RuleState.FIRED),
            suppressed=report.count(RuleState.TRIGGERED_IN_COOLDOWN),
            not_triggered=report.count(RuleState.NOT_TRIGGERED),
        )
        return report

    # --- Scheduler ---

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Tick until `stop_event` is set. A failing tick never ends the loop."""
        self._state.running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                try:
                    now = datetime.utcnow()
                    if self._refresh_due(now):
                        self.refresh_rules(now)
                    await self.run_cycle(now)
                except Exception as e:
                    self._state.last_error = str(e)
                    logger.exception("cycle_crashed")
                try:
                    await asyncio.wait_for(
                        stop_event.wait(),
                        timeout=self.config.evaluation_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    continue
        finally:
            self._state.running = False

    async def start(self) -> None:
        """Start ticking in the background on the running event loop."""
        if self._task is not None and not self._task.done():
            return
        self._stop_event = asyncio.Event()
        self._state.running = True
        self._task = asyncio.create_task(self.run_forever(self._stop_event))
        logger.info(
            "engine_started",
            interval_seconds=self.config.evaluation_interval_seconds,
            refresh_seconds=self.config.rule_refresh_interval_seconds,
        )

    async def stop(self) -> None:
        """Let the in-flight cycle finish, halt the timer, drop delayed actions."""
        if self._task is not None:
            self._stop_event.set()
            await self._task
            self._task = None
        cancelled = await self.dispatcher.cancel_pending()
        logger.info("engine_stopped", cancelled_delayed_actions=cancelled)

    # --- Rule management (pass-through to the store) ---

    def list_rules(self) -> List[Rule]:
        return self.store.list_rules()

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return self.store.get_rule(rule_id)

    def create_rule(self, rule: Rule) -> Rule:
        now = datetime.utcnow()
        rule = rule.model_copy(update={
            "created_at": rule.created_at or now,
            "updated_at": now,
        })
        self.store.save_rule(rule)
        self.refresh_rules()
        return rule

    def update_rule(self, rule_id: str, rule: Rule) -> Optional[Rule]:
        existing = self.store.get_rule(rule_id)
        if existing is None:
            return None
        updated = rule.model_copy(update={
            "id": rule_id,
            "created_at": existing.created_at,
            "updated_at": datetime.utcnow(),
        })
        self.store.save_rule(updated)
        self.refresh_rules()
        return updated

    def delete_rule(self, rule_id: str) -> bool:
        """Soft-disable a rule."""
        deleted = self.store.delete_rule(rule_id)
        if deleted:
            self.refresh_rules()
        return deleted

    # --- Operator alerts and history ---

    async def create_manual_alert(
        self,
        title: str,
        message: str,
        alert_type: str,
        severity: Severity,
        target_roles: List[str],
        target_locations: Optional[GeographicScope] = None,
        created_by: str = "operator",
    ) -> Tuple[Alert, DispatchResult]:
        """Emergency alert that bypasses rule evaluation and cooldowns."""
        alert = self.composer.compose_manual(
            title=title,
            message=message,
            alert_type=alert_type,
            severity=severity,
            target_roles=target_roles,
            target_locations=target_locations,
            created_by=created_by,
        )
        result = await self.dispatcher.dispatch(alert, manual_alert_actions(target_roles))
        logger.info("manual_alert_created", alert_id=alert.id, created_by=created_by)
        return alert, result

    def alert_history(self, limit: int = 50) -> List[Alert]:
        return self.store.list_alerts(limit=limit)

    def status_snapshot(self) -> dict:
        """The "last evaluation status" surface for operators."""
        last = self._state.last_cycle
        return {
            "status": self.status,
            "rules_loaded": len(self._state.rules),
            "rules_loaded_at": (
                self._state.rules_loaded_at.isoformat() if self._state.rules_loaded_at else None
            ),
            "cycles_run": self._state.cycles_run,
            "last_error": self._state.last_error,
            "pending_delayed_actions": self.dispatcher.pending_count,
            "last_cycle": last.model_dump(mode="json") if last else None,
            "config": self.config.model_dump(mode="json"),
        }
