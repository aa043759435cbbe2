"""
Country CIDR dataset sources.
"""

from .loader import (
    DatasetSource,
    DirectoryDatasetSource,
    HttpDatasetSource,
    StaticDatasetSource,
    parse_cidr_lines,
)

__all__ = [
    "DatasetSource",
    "DirectoryDatasetSource",
    "HttpDatasetSource",
    "StaticDatasetSource",
    "parse_cidr_lines",
]
