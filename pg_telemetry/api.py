"""
HTTP API for the telemetry collector.

Exposes the operator surface of ``TelemetryService`` under /telemetry.
Configuration errors map to 400, missing data to 404.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from pg_telemetry.exceptions import ConfigurationError, InvalidWindowError
from pg_telemetry.schemas import (
    ActivityAt,
    CleanupResult,
    CollectionRun,
    Delta,
    Finding,
    HealthReport,
    ModeProfile,
    ModeState,
    StatementDelta,
    SummaryLine,
    TableDelta,
    WaitSummaryRow,
)
from pg_telemetry.service import TelemetryService

logger = logging.getLogger(__name__)

RECENT_VIEWS = ("waits", "locks", "activity", "progress", "replication")


class ModeRequest(BaseModel):
    mode: str = Field(description="normal, light or emergency")


class TrackTableRequest(BaseModel):
    table: str = Field(min_length=1)
    table_schema: str = Field(default="public", alias="schema")


class ModeResponse(BaseModel):
    state: ModeState
    profile: ModeProfile


class SwitchResponse(BaseModel):
    status: str
    enabled: bool


class TablesResponse(BaseModel):
    tables: List[str]


class RecentResponse(BaseModel):
    view: str
    hours: float
    data: List[Dict[str, Any]]


class TelemetryAPI:
    """
    API interface for the telemetry collector.

    Provides endpoints for:
    - Health and mode
    - Window queries (compare, deltas, waits, anomalies, activity)
    - Administrative control (enable, disable, cleanup, config, tracked tables)
    """

    def __init__(self, telemetry_service: TelemetryService):
        """
        Initialize telemetry API.

        Args:
            telemetry_service: The telemetry service instance
        """
        self.service = telemetry_service
        self.router = APIRouter(prefix="/telemetry", tags=["telemetry"])
        self._setup_routes()

    def _setup_routes(self):
        """Set up API routes."""
        self.router.get("/health", response_model=HealthReport)(self.get_health)

        # Window queries
        self.router.get("/compare", response_model=Delta)(self.compare)
        self.router.get("/deltas", response_model=List[Delta])(self.deltas)
        self.router.get("/waits", response_model=List[WaitSummaryRow])(self.wait_summary)
        self.router.get("/anomalies", response_model=List[Finding])(self.anomaly_report)
        self.router.get("/summary", response_model=List[SummaryLine])(self.summary_report)
        self.router.get("/statements", response_model=List[StatementDelta])(self.statement_compare)
        self.router.get("/activity", response_model=ActivityAt)(self.activity_at)
        self.router.get("/recent/{view}")(self.recent)
        self.router.get("/runs", response_model=List[CollectionRun])(self.recent_runs)

        # Mode
        self.router.get("/mode")(self.get_mode)
        self.router.put("/mode")(self.set_mode)

        # Administrative control
        self.router.post("/enable")(self.enable)
        self.router.post("/disable")(self.disable)
        self.router.post("/cleanup", response_model=CleanupResult)(self.cleanup)
        self.router.post("/sample", response_model=CollectionRun)(self.trigger_sample)
        self.router.post("/snapshot", response_model=CollectionRun)(self.trigger_snapshot)
        self.router.get("/config")(self.get_config)
        self.router.patch("/config")(self.update_config)

        # Tracked tables
        self.router.get("/tables")(self.list_tables)
        self.router.post("/tables")(self.track_table)
        self.router.delete("/tables/{table}")(self.untrack_table)
        self.router.get("/tables/{table}/compare", response_model=TableDelta)(self.table_compare)

    async def get_health(self) -> HealthReport:
        return await self.service.health_check()

    async def compare(
        self, start: datetime = Query(...), end: datetime = Query(...)
    ) -> Delta:
        """
        Delta between the snapshots nearest the window's endpoints.

        Returns:
            Delta, or 404 when fewer than two snapshots cover the window
        """
        try:
            delta = await self.service.compare(start, end)
        except InvalidWindowError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if delta is None:
            raise HTTPException(status_code=404, detail="Not enough snapshots in window")
        return delta

    async def deltas(self, start: datetime = Query(...), end: datetime = Query(...)) -> List[Delta]:
        try:
            return await self.service.deltas(start, end)
        except InvalidWindowError as e:
            raise HTTPException(status_code=400, detail=str(e))

    async def wait_summary(
        self, start: datetime = Query(...), end: datetime = Query(...)
    ) -> List[WaitSummaryRow]:
        try:
            return await self.service.wait_summary(start, end)
        except InvalidWindowError as e:
            raise HTTPException(status_code=400, detail=str(e))

    async def anomaly_report(
        self, start: datetime = Query(...), end: datetime = Query(...)
    ) -> List[Finding]:
        try:
            return await self.service.anomaly_report(start, end)
        except InvalidWindowError as e:
            raise HTTPException(status_code=400, detail=str(e))

    async def summary_report(
        self, start: datetime = Query(...), end: datetime = Query(...)
    ) -> List[SummaryLine]:
        try:
            return await self.service.summary_report(start, end)
        except InvalidWindowError as e:
            raise HTTPException(status_code=400, detail=str(e))

    async def statement_compare(
        self,
        start: datetime = Query(...),
        end: datetime = Query(...),
        min_delta_ms: float = Query(default=100.0, ge=0),
        limit: int = Query(default=25, ge=1, le=500),
    ) -> List[StatementDelta]:
        """
        Statements with the largest execution time growth in a window.

        Returns:
            Statement deltas, empty when statement statistics were not captured
        """
        try:
            return await self.service.statement_compare(start, end, min_delta_ms, limit)
        except InvalidWindowError as e:
            raise HTTPException(status_code=400, detail=str(e))

    async def activity_at(self, at: datetime = Query(...)) -> ActivityAt:
        report = await self.service.activity_at(at)
        if report.sample_captured_at is None and report.snapshot_captured_at is None:
            raise HTTPException(status_code=404, detail="No telemetry data available")
        return report

    async def recent(
        self, view: str, hours: float = Query(default=2.0, gt=0, le=168)
    ) -> RecentResponse:
        if view not in RECENT_VIEWS:
            raise HTTPException(
                status_code=404, detail=f"Unknown view {view}; expected one of {', '.join(RECENT_VIEWS)}"
            )
        fetch = getattr(self.service, f"recent_{view}")
        data = await fetch(timedelta(hours=hours))
        return RecentResponse(view=view, hours=hours, data=data)

    async def recent_runs(
        self,
        task: Optional[str] = Query(default=None),
        hours: float = Query(default=1.0, gt=0, le=168),
    ) -> List[CollectionRun]:
        since = self.service.context.now() - timedelta(hours=hours)
        return await self.service.recent_runs(task, since)

    async def get_mode(self) -> ModeResponse:
        return ModeResponse(state=self.service.get_mode(), profile=self.service.mode_profile())

    async def set_mode(self, request: ModeRequest) -> ModeResponse:
        try:
            state = self.service.set_mode(request.mode)
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        logger.info(f"Mode set to {state.current.value} via API")
        return ModeResponse(state=state, profile=self.service.mode_profile())

    async def enable(self) -> SwitchResponse:
        self.service.enable()
        return SwitchResponse(status="enabled", enabled=True)

    async def disable(self) -> SwitchResponse:
        self.service.disable()
        return SwitchResponse(status="disabled", enabled=False)

    async def cleanup(
        self, retention_days: Optional[float] = Query(default=None, gt=0)
    ) -> CleanupResult:
        try:
            return await self.service.cleanup(retention_days)
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=str(e))

    async def trigger_sample(self) -> CollectionRun:
        run = await self.service.sample_now()
        if run is None:
            raise HTTPException(status_code=503, detail="Could not open a collection run")
        return run

    async def trigger_snapshot(self) -> CollectionRun:
        run = await self.service.snapshot_now()
        if run is None:
            raise HTTPException(status_code=503, detail="Could not open a collection run")
        return run

    async def get_config(self) -> Dict[str, Any]:
        return self.service.config.as_dict()

    async def update_config(self, values: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self.service.configure(values)
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=str(e))

    async def list_tables(self) -> TablesResponse:
        return TablesResponse(tables=self.service.list_tracked_tables())

    async def track_table(self, request: TrackTableRequest) -> TablesResponse:
        try:
            tables = self.service.track_table(request.table, request.table_schema)
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return TablesResponse(tables=tables)

    async def untrack_table(self, table: str, schema: str = Query(default="public")) -> TablesResponse:
        if not self.service.untrack_table(table, schema):
            raise HTTPException(status_code=404, detail=f"Table {table} is not tracked")
        return TablesResponse(tables=self.service.list_tracked_tables())

    async def table_compare(
        self,
        table: str,
        start: datetime = Query(...),
        end: datetime = Query(...),
        schema: str = Query(default="public"),
    ) -> TableDelta:
        try:
            delta = await self.service.table_compare(table, start, end, schema)
        except InvalidWindowError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if delta is None:
            raise HTTPException(status_code=404, detail=f"No data for table {table} in window")
        return delta
