import asyncio
import json
import logging
import shutil
from pathlib import Path

from .interfaces import ImporterGateway, ImporterSettings

logger = logging.getLogger(__name__)

WORKER_SCRIPT = Path(__file__).resolve().parent.parent / "bridge" / "fragments_worker.mjs"
CLOSE_TIMEOUT_SEC = 5.0


class NodeFragmentsImporter(ImporterGateway):
    """Drives `@thatopen/fragments` through a long-lived Node worker process.

    Each call writes a JSON header line followed by the raw IFC bytes to the
    worker's stdin and reads back a header line plus the Fragments bytes.
    The worker handles one frame at a time, so calls are serialized.
    """

    def __init__(self, wasm_path: str, *, node_bin: str = "node", script: str | None = None) -> None:
        self._wasm_path = wasm_path
        self._node_bin = node_bin
        self._script = script or str(WORKER_SCRIPT)
        self._proc: asyncio.subprocess.Process | None = None
        self._lock = asyncio.Lock()

    @property
    def wasm_path(self) -> str:
        return self._wasm_path

    async def start(self) -> None:
        node = shutil.which(self._node_bin)
        if node is None:
            raise RuntimeError(f"node executable not found: {self._node_bin}")
        if not Path(self._script).is_file():
            raise RuntimeError(f"fragments worker script not found: {self._script}")
        self._proc = await asyncio.create_subprocess_exec(
            node,
            self._script,
            self._wasm_path,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
        )
        try:
            header = await self._read_header()
        except Exception:
            await self._kill()
            raise
        # the worker echoes the WASM path it configured
        if not header.get("ready") or header.get("wasmPath") != self._wasm_path:
            await self._kill()
            raise RuntimeError(f"unexpected greeting from fragments worker: {header}")
        logger.info("Fragments worker started (pid %s, wasm path %s)", self._proc.pid, self._wasm_path)

    async def process(self, data: bytes, settings: ImporterSettings) -> bytes:
        async with self._lock:
            proc = self._proc
            if proc is None or proc.stdin is None or proc.stdout is None:
                raise RuntimeError("fragments worker is not running")
            frame = {"size": len(data), "settings": settings.to_wire()}
            try:
                proc.stdin.write(json.dumps(frame).encode("utf-8") + b"\n")
                proc.stdin.write(data)
                await proc.stdin.drain()
                header = await self._read_header()
                if not header.get("ok"):
                    raise _WorkerError(str(header.get("error") or "unknown worker error"))
                return await proc.stdout.readexactly(int(header["size"]))
            except _WorkerError as e:
                # the worker reported a conversion failure; the stream is still in sync
                raise RuntimeError(str(e)) from None
            except (OSError, ValueError, KeyError, RuntimeError, asyncio.IncompleteReadError) as e:
                await self._kill()
                raise RuntimeError(f"fragments worker stream broken: {e}") from e

    async def close(self) -> None:
        async with self._lock:
            proc, self._proc = self._proc, None
        if proc is None:
            return
        if proc.stdin is not None:
            proc.stdin.close()
        try:
            await asyncio.wait_for(proc.wait(), timeout=CLOSE_TIMEOUT_SEC)
        except asyncio.TimeoutError:
            logger.warning("Fragments worker did not exit in %.0fs, killing it", CLOSE_TIMEOUT_SEC)
            proc.kill()
            await proc.wait()
        logger.info("Fragments worker stopped (exit code %s)", proc.returncode)

    async def _read_header(self) -> dict[str, object]:
        assert self._proc is not None and self._proc.stdout is not None
        line = await self._proc.stdout.readline()
        if not line:
            code = await self._proc.wait()
            raise RuntimeError(f"fragments worker exited with code {code}")
        header = json.loads(line)
        if not isinstance(header, dict):
            raise ValueError(f"malformed worker header: {line!r}")
        return header

    async def _kill(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None or proc.returncode is not None:
            return
        proc.kill()
        await proc.wait()
        logger.error("Fragments worker killed after a protocol failure")


class _WorkerError(Exception):
    pass
