from typing import List

from fastapi import APIRouter, HTTPException

from ...logic.diagnostics import diagnose_measure
from ...logic.tree import change_connective_by_id, find_by_id, is_logical_clause
from ...schemas.api import ConnectiveRequest, DiagnosticOut, DiagnosticsRequest
from ...schemas.ums import LogicalClause

router = APIRouter()


@router.post("/connective", response_model=LogicalClause)
async def change_connective(request: ConnectiveRequest):
    """
    Change one connective in a clause.

    The two siblings are nested into a new clause carrying the requested
    operator; asking for the clause's own operator returns it unchanged.
    """
    clause_id = request.clause_id or request.clause.id
    if not is_logical_clause(find_by_id(request.clause, clause_id)):
        raise HTTPException(status_code=404, detail=f"Clause '{clause_id}' not found")
    return change_connective_by_id(request.clause, clause_id, request.index, request.operator)


@router.post("/diagnostics", response_model=List[DiagnosticOut])
async def diagnostics(request: DiagnosticsRequest):
    """Advisory findings for a measure's logic and value sets."""
    return [
        DiagnosticOut(code=d.code, message=d.message, node_id=d.node_id)
        for d in diagnose_measure(request.measure)
    ]
