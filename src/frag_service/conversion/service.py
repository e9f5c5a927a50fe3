import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from ..errors import ConversionError, InitializationError, NotInitializedError
from .adapters import NodeFragmentsImporter
from .interfaces import ImporterGateway, ImporterSettings

logger = logging.getLogger(__name__)

DEFAULT_WASM_PATH = "./node_modules/web-ifc/"


@dataclass(frozen=True)
class ConversionOptions:
    coordinate_to_origin: bool = True
    name: str | None = None
    excluded_categories: frozenset[int] | None = None
    include_properties: bool | None = None

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {"coordinateToOrigin": self.coordinate_to_origin}
        if self.name is not None:
            out["name"] = self.name
        if self.excluded_categories is not None:
            out["excludedCategories"] = sorted(self.excluded_categories)
        if self.include_properties is not None:
            out["includeProperties"] = self.include_properties
        return out


@dataclass(frozen=True)
class ConversionMetadata:
    name: str | None
    timestamp: str
    size: int
    options: ConversionOptions

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "timestamp": self.timestamp,
            "size": self.size,
            "options": self.options.to_dict(),
        }


@dataclass
class ConversionResult:
    data: bytes
    metadata: ConversionMetadata


class _Handle:
    """An initialized importer plus the number of conversions running on it."""

    def __init__(self, importer: ImporterGateway) -> None:
        self.importer = importer
        self.calls = 0
        self.idle = asyncio.Event()
        self.idle.set()

    def enter(self) -> None:
        self.calls += 1
        self.idle.clear()

    def leave(self) -> None:
        self.calls -= 1
        if self.calls == 0:
            self.idle.set()

    async def retire(self) -> None:
        await self.idle.wait()
        await self.importer.close()


class FragmentsConverter:
    """Owns the single IFC importer shared by all requests.

    The importer is expensive to bring up (it loads the web-ifc WASM runtime),
    so it is started once by `initialize()` and reused until `cleanup()`.
    Options are turned into a fresh `ImporterSettings` for every call and
    handed to the importer; nothing about one call leaks into another.
    """

    def __init__(
        self,
        importer_factory: Callable[[str], ImporterGateway] = NodeFragmentsImporter,
        *,
        wasm_path: str = DEFAULT_WASM_PATH,
    ) -> None:
        self._factory = importer_factory
        self._wasm_path = wasm_path
        self._defaults = ImporterSettings()
        self._handle: _Handle | None = None

    @property
    def ready(self) -> bool:
        return self._handle is not None

    @property
    def wasm_path(self) -> str:
        return self._wasm_path

    @property
    def defaults(self) -> ImporterSettings:
        return self._defaults

    async def initialize(self) -> None:
        """Start a new importer and make it the active one.

        A previously active importer stops receiving new calls at once and is
        closed after the calls still running on it have finished.
        """
        try:
            importer = self._factory(self._wasm_path)
            await importer.start()
        except Exception as e:
            raise InitializationError(f"Failed to initialize IFC importer: {e}") from e
        previous, self._handle = self._handle, _Handle(importer)
        logger.info("IFC importer initialized (wasm path %s)", self._wasm_path)
        if previous is not None:
            logger.info("Retiring previous IFC importer after %d in-flight call(s)", previous.calls)
            await previous.retire()

    async def convert(self, data: bytes, options: ConversionOptions | None = None) -> ConversionResult:
        handle = self._handle
        if handle is None:
            raise NotInitializedError("IFC importer not initialized. Call initialize() first.")
        options = options or ConversionOptions()
        settings = self._settings_for(options)

        handle.enter()
        try:
            fragments = await handle.importer.process(data, settings)
        except Exception as e:
            raise ConversionError(f"Failed to convert IFC to Fragments: {e}") from e
        finally:
            handle.leave()

        now = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        logger.info("Converted %r: %d bytes IFC -> %d bytes fragments", options.name, len(data), len(fragments))
        return ConversionResult(
            data=bytes(fragments),
            metadata=ConversionMetadata(name=options.name, timestamp=now, size=len(fragments), options=options),
        )

    async def cleanup(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        await handle.retire()
        logger.info("IFC importer released")

    def _settings_for(self, options: ConversionOptions) -> ImporterSettings:
        changes: dict[str, object] = {"coordinate_to_origin": options.coordinate_to_origin}
        if options.include_properties is not None:
            changes["include_properties"] = options.include_properties
        if options.excluded_categories is not None:
            changes["excluded_categories"] = frozenset(options.excluded_categories)
        return dataclasses.replace(self._defaults, **changes)
