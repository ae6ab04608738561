"""
Pipeline Agents

Each agent handles one step of the analysis:
- Agent 0: Data acquisition (GDC download / cache)
- Agent 1: Cohort partition by a clinical attribute
- Agent 2: Differential expression (limma)
- Agent 3: Enrichment (Enrichr)
- Agent 4: Report (Excel workbook + figures)
"""

from .agent0_data import DataAgent
from .agent1_cohort import CohortAgent
from .agent2_deg import DEGAgent
from .agent3_enrichment import EnrichmentAgent
from .agent4_report import ReportAgent

__all__ = [
    "DataAgent",
    "CohortAgent",
    "DEGAgent",
    "EnrichmentAgent",
    "ReportAgent",
]
