"""
Hazard Alert Engine API — FastAPI endpoints.

Operator surface for:
- Rule management (create / update / soft-delete / list)
- Engine control (start, stop, refresh, one-off cycle, status)
- Manual emergency alerts and alert history
"""

from contextlib import asynccontextmanager
from typing import List, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from hazard_alerts.config import Settings, get_settings
from hazard_alerts.data.store import SQLiteDataStore
from hazard_alerts.dispatch.channels import NotificationChannel
from hazard_alerts.dispatch.dispatcher import NotificationDispatcher
from hazard_alerts.engine.loop import RuleEngine
from hazard_alerts.errors import DataAccessError
from hazard_alerts.logging_config import configure_logging
from hazard_alerts.models.engine import EngineConfig
from hazard_alerts.models.rule import (
    Action,
    Condition,
    GeographicScope,
    HazardType,
    Rule,
    Severity,
)


# --- Request/Response Models ---

class RuleRequest(BaseModel):
    name: str
    description: str = ""
    hazard_type: HazardType = HazardType.ANY
    conditions: List[Condition] = Field(min_length=1)
    actions: List[Action] = []
    priority: Severity = Severity.MEDIUM
    time_window_minutes: int = Field(default=60, gt=0)
    cooldown_minutes: int = Field(default=60, ge=0)
    is_active: bool = True
    geographic_scope: Optional[GeographicScope] = None
    created_by: str = "api_user"


class ManualAlertRequest(BaseModel):
    title: str
    message: str
    alert_type: str = "general"
    severity: Severity = Severity.HIGH
    target_roles: List[str] = Field(min_length=1)
    target_locations: Optional[GeographicScope] = None
    created_by: str = "operator"


# --- Application Factory ---

def create_app(
    store: Optional[SQLiteDataStore] = None,
    channel: Optional[NotificationChannel] = None,
    config: Optional[EngineConfig] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    ds = store or SQLiteDataStore(settings.db_path)
    engine_config = config or settings.engine_config()
    dispatcher = NotificationDispatcher(ds, channel=channel, config=engine_config)
    engine = RuleEngine(ds, dispatcher=dispatcher, config=engine_config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine.refresh_rules()
        if settings.autostart:
            await engine.start()
        yield
        await engine.stop()

    app = FastAPI(
        title="Hazard Alert Engine API",
        description="Alert rules and threshold evaluation for coastal hazard reports",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.store = ds
    app.state.dispatcher = dispatcher
    app.state.engine = engine

    @app.exception_handler(DataAccessError)
    async def data_access_error_handler(request: Request, exc: DataAccessError):
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    # === RULES ===

    @app.post("/rules")
    def create_rule(req: RuleRequest):
        """Create a rule; it is active from the next cycle."""
        rule = Rule(id=f"rule_{uuid4().hex[:12]}", **req.model_dump())
        created = engine.create_rule(rule)
        return {"id": created.id, "rule": created.model_dump(mode="json")}

    @app.get("/rules")
    def list_rules(active_only: bool = False):
        rules = engine.list_rules()
        if active_only:
            rules = [r for r in rules if r.is_active]
        return [r.model_dump(mode="json") for r in rules]

    @app.get("/rules/{rule_id}")
    def get_rule(rule_id: str):
        rule = engine.get_rule(rule_id)
        if not rule:
            raise HTTPException(404, "Rule not found")
        return rule.model_dump(mode="json")

    @app.put("/rules/{rule_id}")
    def update_rule(rule_id: str, req: RuleRequest):
        updated = engine.update_rule(rule_id, Rule(id=rule_id, **req.model_dump()))
        if not updated:
            raise HTTPException(404, "Rule not found")
        return updated.model_dump(mode="json")

    @app.delete("/rules/{rule_id}")
    def delete_rule(rule_id: str):
        """Deactivate a rule (history keeps referring to it)."""
        if not engine.delete_rule(rule_id):
            raise HTTPException(404, "Rule not found")
        return {"status": "deactivated", "rule_id": rule_id}

    # === ENGINE ===

    @app.get("/engine/status")
    def engine_status():
        return engine.status_snapshot()

    @app.post("/engine/start")
    async def start_engine():
        await engine.start()
        return {"status": engine.status}

    @app.post("/engine/stop")
    async def stop_engine():
        await engine.stop()
        return {"status": engine.status}

    @app.post("/engine/refresh")
    def refresh_rules():
        return {"rules_loaded": engine.refresh_rules()}

    @app.post("/engine/trigger")
    async def trigger_cycle():
        """Run one evaluation cycle now."""
        report = await engine.run_cycle()
        return report.model_dump(mode="json")

    # === ALERTS ===

    @app.post("/alerts/manual")
    async def create_manual_alert(req: ManualAlertRequest):
        """Operator emergency alert, bypassing rules and cooldowns."""
        alert, result = await engine.create_manual_alert(
            title=req.title,
            message=req.message,
            alert_type=req.alert_type,
            severity=req.severity,
            target_roles=req.target_roles,
            target_locations=req.target_locations,
            created_by=req.created_by,
        )
        return {
            "alert": alert.model_dump(mode="json"),
            "dispatch": result.model_dump(mode="json"),
        }

    @app.get("/alerts")
    def alert_history(limit: int = 50):
        return [a.model_dump(mode="json") for a in engine.alert_history(limit=limit)]

    @app.get("/alerts/{alert_id}")
    def get_alert(alert_id: str):
        alert = ds.get_alert(alert_id)
        if not alert:
            raise HTTPException(404, "Alert not found")
        return alert.model_dump(mode="json")

    return app


def _default_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level, json_logs=settings.log_json)
    return create_app(settings=settings)


# Default application instance
app = _default_app()
