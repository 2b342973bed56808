"""Workflow graph validation."""

from .graph_validator import GraphValidator, ValidationIssue

__all__ = ["GraphValidator", "ValidationIssue"]
