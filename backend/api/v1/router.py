"""API v1 aggregated router.

All v1 endpoints are registered here and mounted under /api/v1 in main.py.
"""

from fastapi import APIRouter

from api.routes import automation_rules, events, executions, templates, workflows
from api.schemas.common import ErrorResponse

api_v1_router = APIRouter(
    responses={
        404: {"model": ErrorResponse, "description": "Resource not found"},
        409: {"model": ErrorResponse, "description": "Operation not allowed in the current state"},
    },
)

# Workflow definitions, versions, simulation and triggers
api_v1_router.include_router(
    workflows.router,
    prefix="/workflows",
    tags=["Workflows"],
)

# Executions: status, approvals, cancel, retry
api_v1_router.include_router(
    executions.router,
    prefix="/executions",
    tags=["Executions"],
)

# Automation rules
api_v1_router.include_router(
    automation_rules.router,
    prefix="/rules",
    tags=["Automation Rules"],
)

# Templates
api_v1_router.include_router(
    templates.router,
    prefix="/templates",
    tags=["Templates"],
)

# Domain events
api_v1_router.include_router(
    events.router,
    prefix="/events",
    tags=["Events"],
)
