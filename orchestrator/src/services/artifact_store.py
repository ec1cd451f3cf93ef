"""
Content-addressed artifact storage.
"""

import hashlib
import logging
import os
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Set, Tuple

from orchestrator.src.errors import ArtifactNotFoundError
from orchestrator.src.models.run import ArtifactRef

logger = logging.getLogger(__name__)


def digest_of(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class ArtifactStore(ABC):
    """
    put/get contract shared by all stores.

    References are counted per run so `release_run` can drop blobs nothing
    points at any more.
    """

    def __init__(self):
        self._refs: Dict[str, Set[Tuple[int, str]]] = defaultdict(set)
        self._refs_lock = threading.Lock()

    @abstractmethod
    def _write(self, digest: str, data: bytes) -> None: ...

    @abstractmethod
    def _read(self, digest: str) -> bytes: ...

    @abstractmethod
    def _delete(self, digest: str) -> None: ...

    @abstractmethod
    def _exists(self, digest: str) -> bool: ...

    def put(self, key: str, data: bytes, run_id: int = None) -> ArtifactRef:
        digest = digest_of(data)
        if not self._exists(digest):
            self._write(digest, data)
        ref = ArtifactRef(key=key, digest=digest, size=len(data))
        if run_id is not None:
            self.retain(ref, run_id)
        logger.debug(f"Stored artifact {key} ({digest[:12]}, {len(data)} bytes)")
        return ref

    def get(self, ref: ArtifactRef) -> bytes:
        if not self._exists(ref.digest):
            raise ArtifactNotFoundError(f"Artifact {ref.key} ({ref.digest[:12]}) not found")
        data = self._read(ref.digest)
        if digest_of(data) != ref.digest:
            raise ArtifactNotFoundError(f"Artifact {ref.key} is corrupt")
        return data

    def retain(self, ref: ArtifactRef, run_id: int) -> None:
        with self._refs_lock:
            self._refs[ref.digest].add((run_id, ref.key))

    def ref_count(self, ref: ArtifactRef) -> int:
        with self._refs_lock:
            return len(self._refs.get(ref.digest, ()))

    def release_run(self, run_id: int) -> List[str]:
        """Drop a run's references; delete blobs left unreferenced."""
        deleted = []
        with self._refs_lock:
            for digest in list(self._refs):
                holders = {h for h in self._refs[digest] if h[0] != run_id}
                if holders == self._refs[digest]:
                    continue
                if holders:
                    self._refs[digest] = holders
                else:
                    del self._refs[digest]
                    self._delete(digest)
                    deleted.append(digest)
        logger.info(f"Released artifacts of run {run_id}, deleted {len(deleted)} blobs")
        return deleted


class FileSystemArtifactStore(ArtifactStore):
    """Blobs stored under <root>/<digest[:2]>/<digest>."""

    def __init__(self, root: str):
        super().__init__()
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, digest: str) -> Path:
        return self.root / digest[:2] / digest

    def _write(self, digest: str, data: bytes) -> None:
        path = self._path(digest)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(f".{os.getpid()}.{threading.get_ident()}.tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)

    def _read(self, digest: str) -> bytes:
        return self._path(digest).read_bytes()

    def _delete(self, digest: str) -> None:
        self._path(digest).unlink(missing_ok=True)

    def _exists(self, digest: str) -> bool:
        return self._path(digest).is_file()


class MemoryArtifactStore(ArtifactStore):
    def __init__(self):
        super().__init__()
        self._blobs: Dict[str, bytes] = {}

    def _write(self, digest: str, data: bytes) -> None:
        self._blobs[digest] = data

    def _read(self, digest: str) -> bytes:
        return self._blobs[digest]

    def _delete(self, digest: str) -> None:
        self._blobs.pop(digest, None)

    def _exists(self, digest: str) -> bool:
        return digest in self._blobs
