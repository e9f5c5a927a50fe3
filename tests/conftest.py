import asyncio

import pytest
from fastapi.testclient import TestClient

from frag_service.conversion import FragmentsConverter, ImporterSettings
from frag_service.webapi import create_app

FRAGMENTS = bytes([1, 2, 3, 4, 5])


class FakeImporter:
    """In-memory stand-in for the Node worker."""

    instances: list["FakeImporter"] = []

    def __init__(self, wasm_path: str, *, output: bytes = FRAGMENTS, error: str | None = None, delay: float = 0.0) -> None:
        self.wasm_path = wasm_path
        self.output = output
        self.error = error
        self.delay = delay
        self.started = False
        self.closed = False
        self.calls: list[tuple[bytes, ImporterSettings]] = []
        FakeImporter.instances.append(self)

    async def start(self) -> None:
        self.started = True

    async def process(self, data: bytes, settings: ImporterSettings) -> bytes:
        self.calls.append((data, settings))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.closed:
            raise RuntimeError("importer closed")
        if self.error:
            raise RuntimeError(self.error)
        return self.output

    async def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def _reset_instances():
    FakeImporter.instances = []
    yield


@pytest.fixture
def converter() -> FragmentsConverter:
    return FragmentsConverter(FakeImporter, wasm_path="/opt/web-ifc/")


@pytest.fixture
def upload_dir(tmp_path):
    return tmp_path / "uploads"


@pytest.fixture
def client(converter, upload_dir):
    app = create_app(converter, environment="development", upload_dir=upload_dir)
    with TestClient(app) as c:
        yield c
