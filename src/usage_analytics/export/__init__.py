"""
Asynchronous report exports.

Jobs fetch report data through the aggregation engine, render it to CSV,
JSON, PDF or XLSX, upload the file to an object store and hand back a
signed, expiring download URL.
"""

from .models import (
    ExportFormat,
    ReportType,
    ExportStatus,
    ExportRequest,
    ExportRecord,
    ExportFile,
    ExportFilters,
    ExportOptions,
)
from .templates import TEMPLATES, ReportTemplate, TabularData, Document, get_template
from .object_store import ObjectStore, InMemoryObjectStore, LocalObjectStore, URLSigner, create_object_store
from .service import ExportService

__all__ = [
    # Models
    'ExportFormat',
    'ReportType',
    'ExportStatus',
    'ExportRequest',
    'ExportRecord',
    'ExportFile',
    'ExportFilters',
    'ExportOptions',

    # Templates
    'TEMPLATES',
    'ReportTemplate',
    'TabularData',
    'Document',
    'get_template',

    # Object storage
    'ObjectStore',
    'InMemoryObjectStore',
    'LocalObjectStore',
    'URLSigner',
    'create_object_store',

    # Service
    'ExportService',
]
