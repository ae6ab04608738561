"""
TCGA Cohort Differential Expression Pipeline

A batch pipeline that compares clinical subgroups of a TCGA cohort:
0. Data acquisition (GDC download / local cache)
1. Cohort partition by a clinical attribute (e.g. race)
2. Differential expression (limma-style moderated t-test)
3. Enrichment lookup (Enrichr via gseapy)
4. Report (Excel workbook + heatmap + bar chart)

Each agent has clear input/output files and can be run independently.
"""

__version__ = "1.0.0"

from .orchestrator import CohortDEGPipeline

__all__ = ["CohortDEGPipeline"]
