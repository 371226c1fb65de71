from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

router = APIRouter(prefix="/rules", tags=["Rules"])


def get_services(request: Request):
    return request.app.state.services


class CreateRuleRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    conditions: dict
    actions: list[dict] = Field(..., min_length=1)
    metadata: dict = Field(default_factory=dict)
    is_active: bool = True

    model_config = {"json_schema_extra": {
        "example": {
            "name": "Referral Reward Rule",
            "conditions": {
                "operator": "AND",
                "operands": [
                    {"field": "referrer.status", "op": "=", "value": "PAID"},
                    {"field": "referred.action", "op": "=", "value": "SUBSCRIBED"},
                ],
            },
            "actions": [{"type": "createReward", "params": {"amount": 500, "currency": "INR"}}],
        }
    }}


class UpdateRuleRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    conditions: Optional[dict] = None
    actions: Optional[list[dict]] = None
    metadata: Optional[dict] = None
    is_active: Optional[bool] = None


class EvaluateRequest(BaseModel):
    event: dict[str, Any]


class DispatchRequest(EvaluateRequest):
    event_id: str = Field(..., min_length=1, max_length=255)
    referrer_id: UUID
    referred_id: UUID


@router.post("", status_code=status.HTTP_201_CREATED)
def create_rule(body: CreateRuleRequest, services=Depends(get_services)) -> dict:
    rule = services.rules.create(
        name=body.name,
        conditions=body.conditions,
        actions=body.actions,
        metadata=body.metadata,
        description=body.description,
        is_active=body.is_active,
    )
    return rule.to_dict()


@router.get("")
def list_rules(active_only: bool = False, services=Depends(get_services)) -> list[dict]:
    rules = services.rules.list_active() if active_only else services.rules.list_all()
    return [r.to_dict() for r in rules]


@router.get("/latest")
def latest_rules(services=Depends(get_services)) -> list[dict]:
    return [r.to_dict() for r in services.rules.get_latest_per_name()]


@router.post("/evaluate")
def evaluate_event(body: EvaluateRequest, services=Depends(get_services)) -> dict:
    triggered = services.engine.evaluate(body.event)
    return {"actions": [t.to_dict() for t in triggered]}


@router.post("/explain")
def explain_event(body: EvaluateRequest, services=Depends(get_services)) -> dict:
    return {"results": [r.to_dict() for r in services.engine.explain(body.event)]}


@router.post("/dispatch")
def dispatch_event(body: DispatchRequest, services=Depends(get_services)) -> dict:
    triggered = services.engine.evaluate(body.event)
    outcomes = services.dispatcher.dispatch(triggered, body.referrer_id, body.referred_id, body.event_id)
    return {"outcomes": [o.to_dict() for o in outcomes]}


@router.get("/{rule_id}")
def get_rule(rule_id: UUID, services=Depends(get_services)) -> dict:
    return services.rules.get_by_id(rule_id).to_dict()


@router.put("/{rule_id}")
def update_rule(rule_id: UUID, body: UpdateRuleRequest, services=Depends(get_services)) -> dict:
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    return services.rules.update(rule_id, **changes).to_dict()


@router.delete("/{rule_id}")
def deactivate_rule(rule_id: UUID, services=Depends(get_services)) -> dict:
    return services.rules.deactivate(rule_id).to_dict()
