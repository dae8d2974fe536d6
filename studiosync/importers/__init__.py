"""Per-datatype importers, one page per call."""

from studiosync.importers.base import BaseImporter, ImportRun, LookupCache, PageResult
from studiosync.importers.classes import ClassesImporter
from studiosync.importers.clients import ClientsImporter
from studiosync.importers.sales import SalesImporter
from studiosync.importers.visits import VisitsImporter

__all__ = [
    "BaseImporter",
    "ImportRun",
    "LookupCache",
    "PageResult",
    "ClientsImporter",
    "ClassesImporter",
    "VisitsImporter",
    "SalesImporter",
]
