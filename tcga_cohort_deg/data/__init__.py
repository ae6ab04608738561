"""TCGA data access."""

from .tcga_downloader import TCGADownloader

__all__ = ["TCGADownloader"]
