"""
Domain layer for IFC to Fragments conversion.
Provides the importer gateway, the Node-backed engine adapter and the
converter service so the HTTP layer never talks to the engine directly.
"""

from .interfaces import ImporterGateway, ImporterSettings
from .adapters import NodeFragmentsImporter
from .service import (
    DEFAULT_WASM_PATH,
    ConversionMetadata,
    ConversionOptions,
    ConversionResult,
    FragmentsConverter,
)
