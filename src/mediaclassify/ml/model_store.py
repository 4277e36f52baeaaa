"""Model store: load and save ONNX classifier artifacts with their labels.

A model is a directory (or remote equivalent) holding ``model.onnx`` and
``metadata.json`` with a non-empty ``labels`` list. Sources:

    /path/to/dir                    local directory
    https://host/models/xyz/        base URL, files fetched relative to it
    hf://owner/repo[/subfolder]     Hugging Face Hub repository
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from huggingface_hub import hf_hub_download
from huggingface_hub.utils import HfHubHTTPError

from mediaclassify.errors import FetchFailedError, ModelLoadError
from mediaclassify.media.net import fetch_bytes

if TYPE_CHECKING:
    import httpx

    from mediaclassify.config import Settings

logger = logging.getLogger(__name__)

MODEL_FILENAME = "model.onnx"
METADATA_FILENAME = "metadata.json"
HUB_SCHEME = "hf://"


class SourceKind(StrEnum):
    DIRECTORY = "directory"
    URL = "url"
    HUB = "hub"


@dataclass(frozen=True)
class ModelArtifacts:
    """Serialized model plus its ordered label list."""

    model_bytes: bytes
    labels: tuple[str, ...]
    source: str

    @property
    def classes_count(self) -> int:
        return len(self.labels)


def classify_source(source: str) -> SourceKind:
    if source.startswith(HUB_SCHEME):
        return SourceKind.HUB
    if source.startswith(("http://", "https://")):
        return SourceKind.URL
    return SourceKind.DIRECTORY


def parse_labels(metadata: object) -> tuple[str, ...]:
    """Extract the label list from decoded metadata.

    Raises:
        ModelLoadError: If labels are missing, empty, or not all strings.
    """
    labels = metadata.get("labels") if isinstance(metadata, dict) else None
    if not isinstance(labels, list) or not labels or not all(isinstance(label, str) for label in labels):
        raise ModelLoadError("Invalid metadata: 'labels' must be a non-empty array of strings.")
    return tuple(labels)


def _decode_metadata(raw: bytes | str, origin: str) -> tuple[str, ...]:
    try:
        return parse_labels(json.loads(raw))
    except json.JSONDecodeError as exc:
        raise ModelLoadError(f"Invalid metadata JSON in {origin}: {exc}") from exc


def _split_hub_source(source: str) -> tuple[str, str | None]:
    parts = source.removeprefix(HUB_SCHEME).strip("/").split("/")
    if len(parts) < 2 or not all(parts[:2]):
        raise ModelLoadError(f"Invalid Hub source '{source}', expected hf://owner/repo[/subfolder]")
    repo_id = "/".join(parts[:2])
    subfolder = "/".join(parts[2:]) or None
    return repo_id, subfolder


class ModelStore:
    """Loads model artifacts from a directory, URL or the Hub, and saves them."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http_client
        self._models_dir = Path(settings.models_dir)

    # -- Public API ---------------------------------------------------------

    async def load(self, source: str, *, save_to: str | Path | None = None) -> ModelArtifacts:
        """Load artifacts from ``source``; remote models are optionally saved locally.

        Raises:
            ModelLoadError: Missing files, bad metadata or an unusable source.
        """
        kind = classify_source(source)
        if kind is SourceKind.DIRECTORY:
            return await asyncio.to_thread(self.load_dir, Path(source))

        if kind is SourceKind.URL:
            artifacts = await self._load_url(source)
        else:
            artifacts = await asyncio.to_thread(self._load_hub, source)

        if save_to is not None:
            await asyncio.to_thread(self.save, save_to, artifacts)
        return artifacts

    def load_dir(self, directory: Path) -> ModelArtifacts:
        if not directory.is_dir():
            raise ModelLoadError(f"Model directory not found: {directory}")
        try:
            model_bytes = (directory / MODEL_FILENAME).read_bytes()
            metadata = (directory / METADATA_FILENAME).read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise ModelLoadError(f"Missing model file in {directory}: {exc.filename}") from exc
        labels = _decode_metadata(metadata, str(directory))
        logger.info("Loaded model from %s (%s classes)", directory, len(labels))
        return ModelArtifacts(model_bytes=model_bytes, labels=labels, source=str(directory))

    def save(self, target_dir: str | Path, artifacts: ModelArtifacts) -> Path:
        """Write artifacts to ``target_dir`` in the directory layout."""
        target = Path(target_dir)
        target.mkdir(parents=True, exist_ok=True)
        (target / MODEL_FILENAME).write_bytes(artifacts.model_bytes)
        (target / METADATA_FILENAME).write_text(
            json.dumps({"labels": list(artifacts.labels)}, indent=2),
            encoding="utf-8",
        )
        logger.info("Saved model to %s", target)
        return target

    # -- Internal -----------------------------------------------------------

    async def _load_url(self, base_url: str) -> ModelArtifacts:
        if self._http is None:
            raise ModelLoadError("An HTTP client is required to load models from a URL")
        base = base_url if base_url.endswith("/") else f"{base_url}/"
        retries = self._settings.http_retries
        try:
            metadata = await fetch_bytes(self._http, f"{base}{METADATA_FILENAME}", retries=retries)
            labels = _decode_metadata(metadata, base)
            model_bytes = await fetch_bytes(self._http, f"{base}{MODEL_FILENAME}", retries=retries)
        except FetchFailedError as exc:
            raise ModelLoadError(f"Model loading failed: {exc.message}") from exc
        logger.info("Downloaded model from %s (%s classes)", base, len(labels))
        return ModelArtifacts(model_bytes=model_bytes, labels=labels, source=base_url)

    def _load_hub(self, source: str) -> ModelArtifacts:
        repo_id, subfolder = _split_hub_source(source)
        local_dir = self._models_dir / repo_id.replace("/", "__")
        try:
            paths = {
                name: Path(
                    hf_hub_download(
                        repo_id=repo_id,
                        filename=name,
                        subfolder=subfolder,
                        local_dir=str(local_dir),
                    )
                )
                for name in (METADATA_FILENAME, MODEL_FILENAME)
            }
        except HfHubHTTPError as exc:
            raise ModelLoadError(f"Model loading failed for {source}: {exc}") from exc
        logger.info("Downloaded %s to %s", source, local_dir)
        labels = _decode_metadata(paths[METADATA_FILENAME].read_text(encoding="utf-8"), source)
        return ModelArtifacts(
            model_bytes=paths[MODEL_FILENAME].read_bytes(),
            labels=labels,
            source=source,
        )
