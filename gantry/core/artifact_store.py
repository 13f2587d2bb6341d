"""Run-scoped, name-addressed, immutable artifact store.

Storage layout::

    {base_path}/{run_id}/manifest.json
    {base_path}/{run_id}/blobs/{sha256[0:2]}/{sha256}.dat

Names are unique per run: publishing an existing name raises
``DuplicatePublishError``. Bytes are stored under their SHA-256 digest and
re-hashed on every fetch. There is no update, only whole-run purge once
the retention policy expires.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import threading
from collections import OrderedDict
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pydantic import ValidationError

from gantry.core.errors import (
    ArtifactIntegrityError,
    ArtifactNotFoundError,
    ArtifactStoreUnavailableError,
    DuplicatePublishError,
)
from gantry.core.hasher import sha256_hex
from gantry.models.artifacts import ArtifactPayload, ArtifactRef

logger = logging.getLogger(__name__)

_MANIFEST = "manifest.json"

# Manifests of the most recently used runs kept in memory.
_CACHED_RUNS = 16


class ArtifactStore:
    """Publish/fetch store for the artifacts of pipeline runs.

    Safe to share between worker threads: every manifest change happens
    under one lock, so two publishers racing on a name cannot both win.

    Parameters
    ----------
    base_path:
        Root directory for artifact storage.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._manifests: OrderedDict[str, dict[str, ArtifactRef]] = OrderedDict()

    @property
    def base_path(self) -> Path:
        return self._base

    def _run_dir(self, run_id: str) -> Path:
        return self._base / run_id

    def _blob_path(self, run_id: str, digest: str) -> Path:
        return self._run_dir(run_id) / "blobs" / digest[:2] / f"{digest}.dat"

    # ------------------------------------------------------------------
    # Manifest persistence
    # ------------------------------------------------------------------

    def _manifest(self, run_id: str) -> dict[str, ArtifactRef]:
        if run_id in self._manifests:
            self._manifests.move_to_end(run_id)
            return self._manifests[run_id]

        path = self._run_dir(run_id) / _MANIFEST
        manifest: dict[str, ArtifactRef] = {}
        if path.exists():
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
            except OSError as exc:
                raise ArtifactStoreUnavailableError(
                    f"Cannot read manifest for run {run_id}: {exc}"
                ) from exc
            except json.JSONDecodeError as exc:
                raise ArtifactIntegrityError(
                    f"Manifest for run {run_id} is corrupt: {exc}"
                ) from exc
            if not isinstance(raw, dict):
                raise ArtifactIntegrityError(
                    f"Manifest for run {run_id} is corrupt: expected an object"
                )
            try:
                for item in raw.get("artifacts", []):
                    ref = ArtifactRef.model_validate(item)
                    manifest[ref.name] = ref
            except ValidationError as exc:
                raise ArtifactIntegrityError(
                    f"Manifest for run {run_id} has an invalid entry: {exc}"
                ) from exc
        self._cache(run_id, manifest)
        return manifest

    def _cache(self, run_id: str, manifest: dict[str, ArtifactRef]) -> None:
        self._manifests[run_id] = manifest
        self._manifests.move_to_end(run_id)
        while len(self._manifests) > _CACHED_RUNS:
            self._manifests.popitem(last=False)

    def _write_manifest(self, run_id: str, manifest: dict[str, ArtifactRef]) -> None:
        run_dir = self._run_dir(run_id)
        run_dir.mkdir(parents=True, exist_ok=True)
        payload = {
            "run_id": run_id,
            "artifacts": [ref.model_dump(mode="json") for ref in manifest.values()],
        }
        tmp = run_dir / f"{_MANIFEST}.tmp"
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, run_dir / _MANIFEST)

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    def publish(
        self,
        run_id: str,
        task_name: str,
        artifact_name: str,
        payload: bytes,
        *,
        filename: str = "",
        media_type: str = "application/octet-stream",
    ) -> ArtifactRef:
        """Publish one artifact. Raises ``DuplicatePublishError`` on reuse of a name."""
        item = ArtifactPayload(
            name=artifact_name, data=payload, filename=filename, media_type=media_type
        )
        return self.publish_many(run_id, task_name, [item])[0]

    def publish_many(
        self, run_id: str, task_name: str, payloads: Iterable[ArtifactPayload]
    ) -> list[ArtifactRef]:
        """Publish several artifacts of one task as a unit.

        Blobs are written first and the manifest is committed once, so a
        storage failure leaves none of the names published.
        """
        items = list(payloads)
        seen: set[str] = set()
        for item in items:
            if item.name in seen:
                raise DuplicatePublishError(
                    f"Artifact {item.name!r} appears twice in one publish "
                    f"from task {task_name!r}."
                )
            seen.add(item.name)

        with self._lock:
            manifest = self._manifest(run_id)
            for item in items:
                if item.name in manifest:
                    owner = manifest[item.name].producer
                    raise DuplicatePublishError(
                        f"Artifact {item.name!r} was already published in run "
                        f"{run_id} by task {owner!r}."
                    )

            refs: list[ArtifactRef] = []
            try:
                for item in items:
                    digest = sha256_hex(item.data)
                    path = self._blob_path(run_id, digest)
                    if not path.exists():
                        path.parent.mkdir(parents=True, exist_ok=True)
                        path.write_bytes(item.data)
                    refs.append(
                        ArtifactRef(
                            run_id=run_id,
                            name=item.name,
                            producer=task_name,
                            content_address=f"sha256:{digest}",
                            size_bytes=len(item.data),
                            filename=item.filename or item.name,
                            media_type=item.media_type,
                        )
                    )
                updated = dict(manifest)
                updated.update((ref.name, ref) for ref in refs)
                self._write_manifest(run_id, updated)
            except OSError as exc:
                raise ArtifactStoreUnavailableError(
                    f"Cannot publish artifacts of {task_name!r} in run {run_id}: {exc}"
                ) from exc
            self._cache(run_id, updated)

        for ref in refs:
            logger.info(
                "Published %s from %s (%d bytes, %s)",
                ref.name, task_name, ref.size_bytes, ref.content_address,
            )
        return refs

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    def describe(self, run_id: str, artifact_name: str) -> ArtifactRef:
        """Return the reference of a published artifact."""
        with self._lock:
            ref = self._manifest(run_id).get(artifact_name)
        if ref is None:
            raise ArtifactNotFoundError(
                f"Artifact {artifact_name!r} has not been published in run {run_id}."
            )
        return ref

    def fetch(self, run_id: str, artifact_name: str) -> bytes:
        """Return the exact bytes published under *artifact_name*.

        Raises ``ArtifactNotFoundError`` if the producing task has not
        published it, ``ArtifactIntegrityError`` if the stored bytes no
        longer match their content address.
        """
        ref = self.describe(run_id, artifact_name)
        try:
            data = self._blob_path(run_id, ref.digest).read_bytes()
        except FileNotFoundError as exc:
            raise ArtifactIntegrityError(
                f"Blob for {artifact_name!r} ({ref.content_address}) is missing."
            ) from exc
        except OSError as exc:
            raise ArtifactStoreUnavailableError(
                f"Cannot read {artifact_name!r} in run {run_id}: {exc}"
            ) from exc
        if sha256_hex(data) != ref.digest:
            raise ArtifactIntegrityError(
                f"Artifact {artifact_name!r} failed integrity check "
                f"(expected {ref.content_address})."
            )
        return data

    def exists(self, run_id: str, artifact_name: str) -> bool:
        with self._lock:
            return artifact_name in self._manifest(run_id)

    def list_artifacts(self, run_id: str) -> list[ArtifactRef]:
        """All artifacts of a run, in publish order."""
        with self._lock:
            return list(self._manifest(run_id).values())

    def verify(self, run_id: str, artifact_name: str) -> bool:
        """Re-hash stored bytes and compare against the content address."""
        try:
            self.fetch(run_id, artifact_name)
        except (ArtifactNotFoundError, ArtifactIntegrityError):
            return False
        return True

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def run_ids(self) -> list[str]:
        """Run ids that have a directory in the store."""
        if not self._base.exists():
            return []
        return sorted(p.name for p in self._base.iterdir() if p.is_dir())

    def purge_run(self, run_id: str) -> int:
        """Delete every artifact of a run. Returns the number removed."""
        with self._lock:
            try:
                count = len(self._manifest(run_id))
            except ArtifactIntegrityError as exc:
                logger.warning("Purging run %s with a corrupt manifest: %s", run_id, exc)
                count = 0
            run_dir = self._run_dir(run_id)
            if run_dir.exists():
                shutil.rmtree(run_dir)
            self._manifests.pop(run_id, None)
        logger.info("Purged %d artifact(s) of run %s", count, run_id)
        return count

    def prune_expired(
        self, retention_days: int, *, now: datetime | None = None
    ) -> list[str]:
        """Purge runs whose newest artifact is older than *retention_days*.

        Returns the purged run ids.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=retention_days)
        purged: list[str] = []
        for run_id in self.run_ids():
            try:
                refs = self.list_artifacts(run_id)
            except ArtifactIntegrityError:
                refs = []
            if refs:
                newest = max(ref.published_at for ref in refs)
            else:
                mtime = self._run_dir(run_id).stat().st_mtime
                newest = datetime.fromtimestamp(mtime, tz=timezone.utc)
            if newest < cutoff:
                self.purge_run(run_id)
                purged.append(run_id)
        return purged
