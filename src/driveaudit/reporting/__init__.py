"""
Read-side reporting over persisted scan records: file listings and
folder rollups. Nothing here calls the file-store API.
"""

from driveaudit.reporting.folders import aggregate, summarize_folders
from driveaudit.reporting.listing import FilePage, FileQuery, list_files

__all__ = ["FilePage", "FileQuery", "aggregate", "list_files", "summarize_folders"]
