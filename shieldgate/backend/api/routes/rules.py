"""
api/routes/rules.py

GET    /api/rules        - every rule, enabled or not, ordered by id
POST   /api/rules        - create
PUT    /api/rules/{id}   - partial update
DELETE /api/rules/{id}   - delete

Each mutation invalidates this instance's rule cache and is audited.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from ...engine.admin import AdminService
from ..deps import get_admin, require_admin
from ..serializers import RuleCreateRequest, RuleResponse, RuleUpdateRequest

router = APIRouter(prefix="/rules", tags=["rules"])


@router.get("", response_model=list[RuleResponse])
async def list_rules(
    _actor: str = Depends(require_admin),
    admin: AdminService = Depends(get_admin),
) -> list[dict]:
    return [r.to_dict() for r in admin.list_rules()]


@router.post("", response_model=RuleResponse, status_code=201)
async def create_rule(
    body: RuleCreateRequest,
    actor: str = Depends(require_admin),
    admin: AdminService = Depends(get_admin),
) -> dict:
    rule = admin.create_rule(actor, **body.model_dump())
    return rule.to_dict()


@router.put("/{rule_id}", response_model=RuleResponse)
async def update_rule(
    rule_id: int,
    body: RuleUpdateRequest,
    actor: str = Depends(require_admin),
    admin: AdminService = Depends(get_admin),
) -> dict:
    changes = body.model_dump(exclude_unset=True)
    # null is meaningful only for target_endpoints ("every endpoint")
    changes = {k: v for k, v in changes.items() if v is not None or k == "target_endpoints"}
    if not changes:
        raise HTTPException(status_code=400, detail="no fields to update")
    rule = admin.update_rule(actor, rule_id, **changes)
    if rule is None:
        raise HTTPException(status_code=404, detail=f"Rule {rule_id} not found")
    return rule.to_dict()


@router.delete("/{rule_id}", status_code=204)
async def delete_rule(
    rule_id: int,
    actor: str = Depends(require_admin),
    admin: AdminService = Depends(get_admin),
) -> None:
    if not admin.delete_rule(actor, rule_id):
        raise HTTPException(status_code=404, detail=f"Rule {rule_id} not found")
