"""Exporters to third-party tool formats."""

from .gsea import export_for_gsea, write_cls, write_gct

__all__ = ["export_for_gsea", "write_cls", "write_gct"]
