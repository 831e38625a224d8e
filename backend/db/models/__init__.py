"""Database models for the project automation engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.workflow import Workflow
from db.models.automation_rule import AutomationRule
from db.models.template import WorkflowTemplate
from db.models.execution import WorkflowExecution

__all__ = [
    "Workflow",
    "AutomationRule",
    "WorkflowTemplate",
    "WorkflowExecution",
]
