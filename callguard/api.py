"""
API endpoints for resilience monitoring.

Provides visibility into circuit breaker states, bulkhead saturation and
incidents, plus manual circuit reset and incident resolution.
Mount with app.include_router(build_router(runtime)).
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from .config import Runtime
from .resilience.circuit_breaker import CircuitState

logger = logging.getLogger(__name__)

# Open breakers at or above this count are treated as an infrastructure cascade.
CASCADE_MIN_OPEN = 3


class ResetResponse(BaseModel):
    success: bool
    circuit: str
    previous_state: str
    current_state: str
    message: str


class ActionOut(BaseModel):
    action: str
    outcome: str
    detail: Optional[str] = None
    at: float


class IncidentOut(BaseModel):
    id: str
    key: str
    severity: str
    status: str
    dependency: str
    error_code: str
    rule_name: Optional[str] = None
    pattern: Optional[str] = None
    error_count: int
    created_at: float
    updated_at: float
    resolved_at: Optional[float] = None
    resolution: Optional[str] = None
    actions_taken: list[ActionOut] = []


class ResolveRequest(BaseModel):
    reason: str = "manual"


class HealthResponse(BaseModel):
    status: str  # "healthy", "degraded", "critical"
    circuits: dict[str, Any]
    bulkheads: dict[str, Any]
    incidents: dict[str, Any]


def build_router(runtime: Runtime) -> APIRouter:
    """Create the resilience router bound to one runtime."""
    router = APIRouter(prefix="/api/resilience", tags=["Resilience"])
    registry = runtime.registry
    incidents = runtime.incidents

    @router.get("/circuits", summary="List all circuit breakers")
    async def list_circuits():
        """
        Get status of all circuit breakers.

        Returns state, counters, and configuration for each circuit.
        """
        circuits = registry.breakers()
        return {"circuits": [cb.to_dict() for cb in circuits.values()], "count": len(circuits)}

    @router.get("/circuits/{name}", summary="Get circuit breaker status")
    async def get_circuit(name: str):
        """Get status of a specific circuit breaker."""
        cb = registry.find_breaker(name)
        if not cb:
            raise HTTPException(status_code=404, detail=f"Circuit '{name}' not found")
        return cb.to_dict()

    @router.post("/circuits/{name}/reset", summary="Reset a circuit breaker", response_model=ResetResponse)
    async def reset_circuit(name: str):
        """
        Manually reset a circuit breaker to CLOSED state.

        Use with caution - only when you've verified the downstream
        dependency has recovered.
        """
        cb = registry.find_breaker(name)
        if not cb:
            raise HTTPException(status_code=404, detail=f"Circuit '{name}' not found")

        old_state = cb.state
        cb.reset()

        return ResetResponse(
            success=True,
            circuit=name,
            previous_state=old_state.value,
            current_state=cb.state.value,
            message=f"Circuit '{name}' has been reset",
        )

    @router.get("/bulkheads", summary="List all bulkheads")
    async def list_bulkheads():
        bulkheads = registry.bulkheads()
        return {"bulkheads": [bh.to_dict() for bh in bulkheads.values()], "count": len(bulkheads)}

    @router.get("/incidents", summary="List incidents", response_model=list[IncidentOut])
    async def list_incidents(status: str = Query("active", pattern="^(active|resolved|all)$")):
        """Active incidents by default; resolved ones come from the bounded history."""
        selected = []
        if status in ("active", "all"):
            selected.extend(incidents.active())
        if status in ("resolved", "all"):
            selected.extend(incidents.history())
        return [IncidentOut(**incident.to_dict()) for incident in selected]

    @router.get("/incidents/{incident_id}", summary="Get an incident", response_model=IncidentOut)
    async def get_incident(incident_id: str):
        incident = incidents.get(incident_id)
        if incident is None:
            raise HTTPException(status_code=404, detail=f"Incident '{incident_id}' not found")
        return IncidentOut(**incident.to_dict())

    @router.post("/incidents/{incident_id}/resolve", summary="Resolve an incident", response_model=IncidentOut)
    async def resolve_incident(incident_id: str, body: Optional[ResolveRequest] = None):
        reason = body.reason if body else "manual"
        try:
            incident = incidents.resolve(incident_id, reason=reason)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Incident '{incident_id}' not found")
        logger.info(f"Incident {incident_id} resolved via API ({reason})")
        return IncidentOut(**incident.to_dict())

    @router.get("/health", summary="Resilience system health", response_model=HealthResponse)
    async def resilience_health():
        """
        Get overall health of resilience components.

        Degraded when any circuit is open or a bulkhead is saturated;
        critical on an open-circuit cascade or a critical incident.
        """
        circuits = registry.breakers()
        bulkheads = registry.bulkheads()
        active = incidents.active()

        open_circuits = [name for name, cb in circuits.items() if cb.state == CircuitState.OPEN]
        saturated = [name for name, bh in bulkheads.items() if bh.available <= 0]
        critical_incidents = [i.id for i in active if i.severity.value == "critical"]

        health_status = "healthy"
        if open_circuits or saturated:
            health_status = "degraded"
        if len(open_circuits) >= CASCADE_MIN_OPEN or critical_incidents:
            health_status = "critical"

        return HealthResponse(
            status=health_status,
            circuits={"total": len(circuits), "open": len(open_circuits), "open_names": open_circuits},
            bulkheads={"total": len(bulkheads), "saturated": saturated},
            incidents={"active": len(active), "critical": critical_incidents},
        )

    return router
