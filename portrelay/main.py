# portrelay/main.py

import logging
import secrets
import uvicorn
from contextlib import asynccontextmanager
from typing import Optional
from fastapi.security import APIKeyHeader
from fastapi import FastAPI, HTTPException, Security, APIRouter, Depends, Query

from portrelay.api.models import *
from portrelay.core.config import Config
from portrelay.core.errors import (
    ForwardError,
    NoFreePortError,
    PortConflictError,
    RuleNotFoundError,
    StaleChangeError,
)
from portrelay.core.models import ChangeDescription, ChangeResult, ForwardRule
from portrelay.services.relay_service import RelayService
from portrelay.system.iptables import IPTablesError

# --- Globals & Lifespan ---
service_instance: Optional[RelayService] = None


def init_app(service: RelayService):
    """Injects a ready service, e.g. one built around fake adapters."""
    global service_instance
    service_instance = service


@asynccontextmanager
async def lifespan(app: FastAPI):
    global service_instance
    logging.info("Application startup...")
    if service_instance is None:
        service_instance = RelayService.from_config(Config.from_env())
    yield
    logging.info("Application shutdown.")

app = FastAPI(title="PortRelay API", version="1.0.0", lifespan=lifespan)

# --- SECURITY & DEPENDENCIES ---
admin_api_key_header = APIKeyHeader(name="X-Admin-API-Key", auto_error=True)

def get_admin_key(key: str = Security(admin_api_key_header)):
    expected = service_instance.config.admin_api_key if service_instance else ""
    if not expected or not secrets.compare_digest(key, expected):
        raise HTTPException(status_code=403, detail="Invalid or missing Admin API Key")

async def call(func, *args, **kwargs):
    """Runs one intent on the service and maps domain errors to HTTP errors."""
    try:
        return await service_instance.run(func, *args, **kwargs)
    except RuleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (PortConflictError, StaleChangeError, NoFreePortError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ForwardError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except IPTablesError as e:
        raise HTTPException(status_code=502, detail=str(e))

# --- Converters ---

def rule_model(rule: ForwardRule) -> ForwardRuleModel:
    return ForwardRuleModel(relay_port=rule.relay_port, target_host=rule.target_host, target_port=rule.target_port)

def change_model(change: ChangeDescription) -> ChangeModel:
    return ChangeModel(
        kind=change.kind,
        relay_port=change.relay_port,
        target_port=change.target_port,
        target_host=change.target_host,
        new_relay_port=change.new_relay_port,
        new_target_port=change.new_target_port,
        force=change.force,
        auto_assigned=change.auto_assigned,
        requested_relay_port=change.requested_relay_port,
        summary=change.summary(),
    )

def change_from_model(model: ChangeModel) -> ChangeDescription:
    # Proposals coming back over the wire are always re-checked before they are applied.
    return ChangeDescription(
        kind=model.kind,
        relay_port=model.relay_port,
        target_port=model.target_port,
        target_host=service_instance.config.target_ip,
        new_relay_port=model.new_relay_port,
        new_target_port=model.new_target_port,
        force=model.force,
        auto_assigned=model.auto_assigned,
        requested_relay_port=model.requested_relay_port,
        checked_at=float("-inf"),
    )

def result_response(result: ChangeResult) -> ChangeResultResponse:
    response = ChangeResultResponse(
        status=result.status,
        ok=result.ok,
        error=result.error,
        message=result.message,
        completed_steps=result.completed_steps,
        compensated=result.compensated,
        warnings=result.warnings,
        change=change_model(result.change) if result.change else None,
    )
    if not result.ok:
        raise HTTPException(status_code=502, detail=response.model_dump(mode="json"))
    return response

# --- FORWARDS ROUTER ---
router = APIRouter(dependencies=[Depends(get_admin_key)])

@router.get("/forwards", response_model=ForwardListResponse)
async def list_forwards(limit: Optional[int] = Query(None, ge=1)):
    """Lists forwarding rules to the target host, oldest first."""
    listing = await call(service_instance.reporting.list_all, limit)
    return ForwardListResponse(
        entries=[ForwardEntryModel(relay_port=e.relay_port, target_port=e.target_port, listening=e.listening)
                 for e in listing.entries],
        total=listing.total,
        remaining=listing.remaining,
    )

@router.get("/forwards/{port}", response_model=PortResponse)
async def describe_forward(port: int):
    """Shows the rule at a relay port and what else uses the port."""
    description = await call(service_instance.reporting.describe, port)
    if description.rule is None:
        raise HTTPException(status_code=404, detail=f"No forwarding rule exists at relay port {port}")
    return PortResponse(
        port=description.port,
        conflict=description.conflict,
        rule=rule_model(description.rule),
        usage=PortUsageModel(listeners=description.usage.listeners, rules=description.usage.rules),
    )

@router.post("/forwards", response_model=ChangeResultResponse, status_code=201)
async def add_forward(req: AddForwardRequest):
    result = await call(service_instance.reconciler.add, req.target_port, req.relay_port, req.auto_assign)
    return result_response(result)

@router.post("/forwards/range", response_model=RangeResponse)
async def add_range(req: RangeRequest):
    result = await call(service_instance.reconciler.add_range, req.start, req.end)
    return RangeResponse(succeeded=result.succeeded, failed=result.failed, requested=result.requested)

@router.patch("/forwards/{relay_port}", response_model=ChangeResultResponse)
async def modify_forward(relay_port: int, req: ModifyForwardRequest):
    result = await call(
        service_instance.reconciler.modify, relay_port, req.new_target_port, req.new_relay_port, req.force
    )
    return result_response(result)

@router.delete("/forwards/{relay_port}", response_model=ChangeResultResponse)
async def remove_forward(relay_port: int):
    result = await call(service_instance.reconciler.remove, relay_port)
    return result_response(result)

# --- Two-step changes: propose, then apply or cancel ---

@router.post("/proposals/remove/{relay_port}", response_model=ChangeModel)
async def propose_remove(relay_port: int):
    change = await call(service_instance.reconciler.propose_remove, relay_port)
    return change_model(change)

@router.post("/proposals/modify/{relay_port}", response_model=ChangeModel)
async def propose_modify(relay_port: int, req: ModifyForwardRequest):
    change = await call(
        service_instance.reconciler.propose_modify, relay_port, req.new_target_port, req.new_relay_port, req.force
    )
    return change_model(change)

@router.post("/proposals/apply", response_model=ChangeResultResponse)
async def apply_proposal(req: ApplyChangeRequest):
    change = change_from_model(req.change)
    result = await call(service_instance.reconciler.apply_change, change, req.confirmed)
    return result_response(result)

# --- Diagnostics ---

@router.get("/status", response_model=StatusResponse)
async def get_status():
    status = await call(service_instance.reporting.status)
    return StatusResponse(
        target_host=service_instance.config.target_ip,
        ip_forward_enabled=status.ip_forward_enabled,
        rule_count=status.rule_count,
        well_known_ports=status.well_known_ports,
        recent_rules=[rule_model(r) for r in status.recent_rules],
    )

@router.get("/cleanup", response_model=CleanupResponse)
async def get_cleanup():
    report = await call(service_instance.reporting.cleanup)
    return CleanupResponse(
        redirect_count=report.redirect_count,
        accept_count=report.accept_count,
        duplicates={port: [rule_model(r) for r in rules] for port, rules in report.duplicates.items()},
    )

@router.get("/ports/free", response_model=FreePortResponse)
async def find_free_port(start: Optional[int] = Query(None, ge=1, le=65535)):
    port = await call(service_instance.allocator.find_available_port, start)
    if port is None:
        raise HTTPException(status_code=404, detail="No available port found")
    return FreePortResponse(port=port)

@router.get("/ports/{port}", response_model=PortResponse)
async def check_port(port: int):
    description = await call(service_instance.reporting.describe, port)
    return PortResponse(
        port=description.port,
        conflict=description.conflict,
        rule=rule_model(description.rule) if description.rule else None,
        usage=PortUsageModel(listeners=description.usage.listeners, rules=description.usage.rules),
    )

# --- INCLUDE ROUTERS ---
app.include_router(router)

# --- MAIN ENTRY ---
def serve(config: Config):
    init_app(RelayService.from_config(config))
    uvicorn.run(app, host=config.api_host, port=config.api_port, log_level="info")

if __name__ == "__main__":
    serve(Config.from_env())
