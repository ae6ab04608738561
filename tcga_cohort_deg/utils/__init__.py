"""Utility modules for the TCGA cohort DEG pipeline."""

from .base_agent import BaseAgent, AgentResult

__all__ = [
    "BaseAgent",
    "AgentResult",
]
